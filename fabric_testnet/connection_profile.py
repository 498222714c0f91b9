# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import abc
import copy
import json

from fabric_testnet.containers import get_public_port, pull_file
from fabric_testnet.versions import uses_test_network_layout

from loguru import logger as LOG

PEER0_ORG1 = "peer0.org1.example.com"
PEER1_ORG1 = "peer1.org1.example.com"
CA_ORG1 = "ca.org1.example.com"
ORDERER = "orderer.example.com"
DEFAULT_CHANNEL = "mychannel"

# Container-internal ports of the services exposed by the all-in-one image
ORDERER_PORT = 7050
PEER0_ORG1_PORT = 7051
CA_ORG1_PORT = 7054
PEER1_ORG1_PORT = 8051


class MissingCertificateAuthorityError(Exception):
    def __init__(self, ca_name, known=None):
        super().__init__(
            f"Connection profile has no certificate authority named {ca_name} (known: {known or []})"
        )
        self.ca_name = ca_name


class ConnectionProfile(abc.ABC):
    """
    Connection profile (topology descriptor) of the org1 view of the test
    network. Concrete layouts are :py:class:`LegacyTopology` and
    :py:class:`ModernTopology`.
    """

    #: Name of the sample network layout inside the image
    layout: str
    #: Path of the connection profile inside the container
    TEMPLATE_PATH: str
    #: Path of the orderer TLS root certificate inside the container
    ORDERER_TLS_CA_PATH: str

    def __init__(self, document: dict):
        self.document = document

    @classmethod
    def from_json(cls, raw):
        return cls(json.loads(raw))

    @property
    def peers(self) -> dict:
        return self.document.get("peers", {})

    @property
    def certificate_authorities(self) -> dict:
        return self.document.get("certificateAuthorities", {})

    @property
    def orderers(self) -> dict:
        return self.document.get("orderers", {})

    @property
    def channels(self) -> dict:
        return self.document.get("channels", {})

    def has_peer(self, name):
        return name in self.peers

    def peer_url(self, name):
        return self.peers[name]["url"]

    def set_peer_url(self, name, url):
        LOG.debug(f"{name} -> {url}")
        self.peers[name]["url"] = url

    def certificate_authority(self, name) -> dict:
        try:
            return self.certificate_authorities[name]
        except KeyError as e:
            raise MissingCertificateAuthorityError(
                name, list(self.certificate_authorities)
            ) from e

    def set_certificate_authority_url(self, name, url):
        LOG.debug(f"{name} -> {url}")
        self.certificate_authority(name)["url"] = url

    @abc.abstractmethod
    def ca_tls_root_pem(self, name) -> str:
        """PEM TLS root certificate(s) of the named certificate authority"""

    def add_orderer(self, name, url, tls_ca_pem):
        self.document["orderers"] = {
            name: {
                "url": url,
                "grpcOptions": {"ssl-target-name-override": name},
                "tlsCACerts": {"pem": tls_ca_pem},
            }
        }

    def add_channel(self, name, orderer, peer):
        self.document["channels"] = {
            name: {
                "orderers": [orderer],
                "peers": {
                    peer: {
                        "endorsingPeer": True,
                        "chaincodeQuery": True,
                        "ledgerQuery": True,
                        "eventSource": True,
                        "discover": True,
                    }
                },
            }
        }

    def to_dict(self) -> dict:
        return copy.deepcopy(self.document)

    def to_json(self) -> str:
        return json.dumps(self.document, indent=2)


class LegacyTopology(ConnectionProfile):
    """fabric-samples "first-network" layout, shipped with 1.x images"""

    layout = "first-network"
    TEMPLATE_PATH = "/fabric-samples/first-network/connection-org1.json"
    ORDERER_TLS_CA_PATH = "/fabric-samples/first-network/crypto-config/ordererOrganizations/example.com/tlsca/tlsca.example.com-cert.pem"

    def ca_tls_root_pem(self, name):
        return self.certificate_authority(name)["tlsCACerts"]["pem"]


class ModernTopology(ConnectionProfile):
    """fabric-samples "test-network" layout, shipped with 2.x images"""

    layout = "test-network"
    TEMPLATE_PATH = "/fabric-samples/test-network/organizations/peerOrganizations/org1.example.com/connection-org1.json"
    ORDERER_TLS_CA_PATH = "/fabric-samples/test-network/organizations/ordererOrganizations/example.com/orderers/orderer.example.com/msp/tlscacerts/tlsca.example.com-cert.pem"

    def ca_tls_root_pem(self, name):
        # CA trust anchors are a list of PEMs in this layout
        pem = self.certificate_authority(name)["tlsCACerts"]["pem"]
        return "".join(pem) if isinstance(pem, list) else pem


def topology_class_for_version(fabric_version):
    if uses_test_network_layout(fabric_version):
        return ModernTopology
    return LegacyTopology


def build_connection_profile(
    container, container_info, fabric_version, publish_all_ports
) -> ConnectionProfile:
    """
    Loads the org1 connection profile matching `fabric_version` from the
    container and points its peer and CA URLs at the host ports they are
    published on.

    When all ports are published on random host ports, service discovery
    cannot be used by clients, so an orderer and a channel entry are added
    to make the profile usable on its own.
    """
    topology = topology_class_for_version(fabric_version)
    LOG.debug(f"Loading {topology.layout} connection profile for Fabric {fabric_version}")
    ccp = topology.from_json(pull_file(container, topology.TEMPLATE_PATH))

    host_port = get_public_port(PEER0_ORG1_PORT, container_info)
    ccp.set_peer_url(PEER0_ORG1, f"grpcs://localhost:{host_port}")

    if ccp.has_peer(PEER1_ORG1):
        host_port = get_public_port(PEER1_ORG1_PORT, container_info)
        ccp.set_peer_url(PEER1_ORG1, f"grpcs://localhost:{host_port}")

    host_port = get_public_port(CA_ORG1_PORT, container_info)
    ccp.set_certificate_authority_url(CA_ORG1, f"https://localhost:{host_port}")

    if publish_all_ports:
        host_port = get_public_port(ORDERER_PORT, container_info)
        pem = pull_file(container, topology.ORDERER_TLS_CA_PATH).decode()
        ccp.add_orderer(ORDERER, f"grpcs://localhost:{host_port}", pem)
        ccp.add_channel(DEFAULT_CHANNEL, ORDERER, PEER0_ORG1)

    return ccp
