# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
from contextlib import contextmanager
from enum import Enum, auto
from typing import Tuple

import docker

from fabric_testnet.connection_profile import (
    ConnectionProfile,
    MissingCertificateAuthorityError,
    build_connection_profile,
)
from fabric_testnet.containers import (
    ContainerLogStreamer,
    get_container_info,
    get_container_internal_ip,
    get_public_port,
    pull_file,
    pull_image,
    stop_container,
)
from fabric_testnet.health import DEFAULT_HEALTH_CHECK_TIMEOUT_S, wait_for_healthy
from fabric_testnet.identities import (
    ADMIN_ENROLLMENT_ID,
    DEFAULT_MSP_ID,
    USER_ENROLLMENT_ID,
    EnrollmentError,
    EnrollmentPhase,
    create_ca_client,
    enroll_admin,
    enroll_user,
)
from fabric_testnet.options import validate_options
from fabric_testnet.ssh import SshConfig
from fabric_testnet.wallet import Wallet, X509Identity

from loguru import logger as LOG

SSH_PORT = 22

# Ports exposed by the all-in-one image
EXPOSED_PORTS = [
    SSH_PORT,  # OpenSSH server
    5984,  # couchdb0
    6984,  # couchdb1
    7050,  # orderer.example.com
    7051,  # peer0.org1.example.com
    7054,  # ca_peerOrg1
    7984,  # couchdb2
    8051,  # peer1.org1.example.com
    8054,  # ca_peerOrg2
    8984,  # couchdb3
    9001,  # supervisord web ui/dashboard
    9051,  # peer0.org2.example.com
    10051,  # peer1.org2.example.com
]

# Host ports bound when ports are not published on random host ports
HOST_PORT_BINDINGS = {
    SSH_PORT: 30022,
    7050: 7050,
    7051: 7051,
    7054: 7054,
    8051: 8051,
    8054: 8054,
    9051: 9051,
    10051: 10051,
}

SSH_PRIVATE_KEY_PATH = "/etc/hyperledger/cactus/fabric-aio-image.key"
SSH_USERNAME = "root"


class LedgerState(Enum):
    CONFIGURED = auto()
    STARTING = auto()
    HEALTHY = auto()
    STOPPED = auto()
    DESTROYED = auto()


class ContainerStartError(Exception):
    def __init__(self, image, cause):
        super().__init__(f"Could not start container from {image}: {cause}")
        self.image = image
        self.cause = cause


class ContainerNotStartedError(Exception):
    pass


class NoContainerError(Exception):
    pass


class FabricTestLedger:
    """
    Single-container Fabric test network (all-in-one image): starts it, waits
    for it to be healthy, exposes connection profiles and bootstraps
    identities against its certificate authority.

    Options are validated on construction, see
    :py:func:`fabric_testnet.options.validate_options`.
    """

    CLASS_NAME = "FabricTestLedger"

    def __init__(
        self,
        publish_all_ports=None,
        image_name=None,
        image_version=None,
        env_vars=None,
        log_level=None,
        emit_container_logs=None,
        docker_client=None,
    ):
        self.config = validate_options(
            publish_all_ports=publish_all_ports,
            image_name=image_name,
            image_version=image_version,
            env_vars=env_vars,
            log_level=log_level,
            emit_container_logs=emit_container_logs,
        )
        self.docker_client = docker_client or docker.from_env()
        self.container = None
        self.container_id = None
        self.log_streamer = None
        self.state = LedgerState.CONFIGURED

    @property
    def publish_all_ports(self) -> bool:
        return self.config.publish_all_ports

    @property
    def emit_container_logs(self) -> bool:
        return self.config.emit_container_logs

    def get_container(self):
        if self.container is None:
            raise ContainerNotStartedError(
                f"{self.CLASS_NAME}: container not yet started by this instance"
            )
        return self.container

    def get_container_image_name(self) -> str:
        return self.config.image_reference

    def get_fabric_version(self) -> str:
        return self.config.fabric_version

    def get_default_msp_id(self) -> str:
        return DEFAULT_MSP_ID

    def get_container_info(self) -> dict:
        if self.container_id is None:
            raise ContainerNotStartedError(
                f"{self.CLASS_NAME}: no container for {self.get_container_image_name()}"
            )
        return get_container_info(self.docker_client, self.container_id)

    def get_container_ip_address(self) -> str:
        return get_container_internal_ip(self.get_container_info())

    def _require_connectable(self, operation):
        if self.container is None or self.state != LedgerState.HEALTHY:
            raise ContainerNotStartedError(
                f"{self.CLASS_NAME}#{operation}() requires a started, healthy container (state: {self.state.name})"
            )

    def _teardown_previous(self):
        LOG.info(f"Replacing container {self.container_id}")
        stop_container(self.container)
        self._stop_log_streamer()
        try:
            self.container.remove()
        except docker.errors.NotFound:
            pass
        self.container = None
        self.container_id = None

    def _stop_log_streamer(self):
        # The log stream ends once the container stops, so call this after stopping it
        if self.log_streamer is not None:
            self.log_streamer.stop()
            self.log_streamer = None

    def _run_container(self, image):
        api = self.docker_client.api
        host_config = api.create_host_config(
            port_bindings=None if self.publish_all_ports else HOST_PORT_BINDINGS,
            publish_all_ports=self.publish_all_ports,
            # The image runs nested services (supervisord, docker-in-docker)
            privileged=True,
        )
        env = [f"{k}={v}" for k, v in self.config.env_vars.items()]
        created = api.create_container(
            image,
            ports=EXPOSED_PORTS,
            environment=env,
            host_config=host_config,
            detach=True,
        )
        self.container_id = created["Id"]
        self.container = self.docker_client.containers.get(self.container_id)
        api.start(self.container_id)
        LOG.info(f"Started container {self.container_id[:12]} [{image}]")

    def start(self, omit_pull=False, timeout=DEFAULT_HEALTH_CHECK_TIMEOUT_S):
        """
        Starts a new container (replacing the one previously started by this
        instance, if any) and returns once it reports healthy.

        :param omit_pull: If True, the image must already be present locally.
        :param timeout: Seconds to wait for the container to become healthy.
        :return: the container handle.
        """
        image = self.get_container_image_name()
        LOG.debug(f"Launching: {image} ...")

        if self.container is not None:
            self._teardown_previous()

        self.state = LedgerState.STARTING
        try:
            if not omit_pull:
                pull_image(self.docker_client, image)
            self._run_container(image)
        except docker.errors.APIError as e:
            LOG.error(f"Failed to start {image}: {e}")
            self.state = LedgerState.STOPPED
            raise ContainerStartError(image, e) from e

        if self.emit_container_logs:
            self.log_streamer = ContainerLogStreamer(
                self.container, f"[{image}]", level=self.config.log_level
            )
            self.log_streamer.start()

        self.wait_for_health_check(timeout)
        self.state = LedgerState.HEALTHY
        return self.container

    def wait_for_health_check(self, timeout=DEFAULT_HEALTH_CHECK_TIMEOUT_S):
        wait_for_healthy(lambda: self.get_container_info()["Status"], timeout=timeout)

    def stop(self):
        if self.container is None:
            raise NoContainerError(f"{self.CLASS_NAME}: container not found, nothing to stop")
        stop_container(self.container)
        self._stop_log_streamer()
        self.state = LedgerState.STOPPED

    def destroy(self):
        if self.container is None:
            raise NoContainerError(
                f"{self.CLASS_NAME}: container not found, nothing to destroy"
            )
        try:
            self.container.remove()
        except docker.errors.NotFound:
            LOG.warning(f"Container {self.container_id} was already removed")
        self._stop_log_streamer()
        LOG.info(f"Removed container {self.container_id[:12]}")
        self.container = None
        self.container_id = None
        self.state = LedgerState.DESTROYED

    def get_connection_profile(self) -> ConnectionProfile:
        self._require_connectable("get_connection_profile")
        return build_connection_profile(
            self.container,
            self.get_container_info(),
            self.get_fabric_version(),
            self.publish_all_ports,
        )

    def create_ca_client(self, session=None):
        return create_ca_client(self.get_connection_profile(), session=session)

    def enroll_admin(self, session=None) -> Tuple[X509Identity, Wallet]:
        try:
            ca_client = self.create_ca_client(session=session)
        except MissingCertificateAuthorityError as e:
            raise EnrollmentError(EnrollmentPhase.ADMIN, ADMIN_ENROLLMENT_ID, e) from e
        return enroll_admin(ca_client, self.get_default_msp_id())

    def enroll_user(self, wallet, session=None) -> X509Identity:
        try:
            ca_client = self.create_ca_client(session=session)
        except MissingCertificateAuthorityError as e:
            raise EnrollmentError(EnrollmentPhase.USER, USER_ENROLLMENT_ID, e) from e
        return enroll_user(ca_client, wallet, self.get_default_msp_id())

    def get_ssh_config(self) -> SshConfig:
        self._require_connectable("get_ssh_config")
        private_key = pull_file(self.container, SSH_PRIVATE_KEY_PATH).decode()
        port = get_public_port(SSH_PORT, self.get_container_info())
        return SshConfig(
            host="localhost",
            port=port,
            username=SSH_USERNAME,
            private_key=private_key,
        )


@contextmanager
def fabric_test_ledger(omit_pull=False, **options):
    """
    Context manager for FabricTestLedger. The container is started on entry and
    always stopped and removed on exit.

    :param omit_pull: If True, the image must already be present locally.
    :param options: see :py:class:`FabricTestLedger`.
    """
    ledger = FabricTestLedger(**options)
    try:
        ledger.start(omit_pull=omit_pull)
        yield ledger
    finally:
        if ledger.container is not None:
            LOG.info("Stopping test ledger")
            ledger.stop()
            ledger.destroy()
