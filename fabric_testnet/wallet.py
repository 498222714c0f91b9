# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger as LOG

X509_IDENTITY_TYPE = "X.509"


@dataclass(frozen=True)
class X509Identity:
    """
    Identity (certificate, private key and MSP) able to transact against the
    test network.
    """

    #: PEM certificate
    certificate: str
    #: PEM private key
    private_key: str
    #: Membership service provider the identity belongs to
    msp_id: str
    #: Identity type tag
    type: str = X509_IDENTITY_TYPE


class IdentityNotFoundError(KeyError):
    def __init__(self, label):
        super().__init__(f"Identity {label} not found in wallet")
        self.label = label


class Wallet:
    """In-memory store of identities, keyed by label"""

    def __init__(self):
        self._identities: Dict[str, X509Identity] = {}

    def put(self, label: str, identity: X509Identity):
        if not isinstance(identity, X509Identity):
            raise TypeError(f"Cannot store {type(identity).__name__} as an identity")
        self._identities[label] = identity

    def get(self, label: str) -> Optional[X509Identity]:
        return self._identities.get(label)

    def remove(self, label: str):
        self._identities.pop(label, None)

    def list(self) -> List[str]:
        return list(self._identities)

    def __contains__(self, label):
        return label in self._identities

    def __len__(self):
        return len(self._identities)


class Gateway:
    """
    Session of a wallet identity against the test network. Privileged
    certificate authority operations are performed as the gateway identity.
    """

    def __init__(self):
        self.identity_label = None
        self._identity = None

    def connect(self, wallet: Wallet, identity: str):
        found = wallet.get(identity)
        if found is None:
            raise IdentityNotFoundError(identity)
        self.identity_label = identity
        self._identity = found
        LOG.debug(f"Gateway connected as {identity} ({found.msp_id})")

    def get_identity(self) -> X509Identity:
        if self._identity is None:
            raise RuntimeError("Gateway is not connected")
        return self._identity

    def disconnect(self):
        if self.identity_label is not None:
            LOG.debug(f"Gateway session of {self.identity_label} closed")
        self._identity = None
        self.identity_label = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.disconnect()
