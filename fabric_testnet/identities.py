# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
from enum import Enum
from typing import Tuple

from fabric_testnet.ca import CAClient, CAClientError, Enrollment
from fabric_testnet.connection_profile import CA_ORG1
from fabric_testnet.wallet import Gateway, IdentityNotFoundError, Wallet, X509Identity

from loguru import logger as LOG

DEFAULT_MSP_ID = "Org1MSP"

# Bootstrap registrar of the all-in-one image
ADMIN_ENROLLMENT_ID = "admin"
ADMIN_ENROLLMENT_SECRET = "adminpw"

USER_ENROLLMENT_ID = "user2"
USER_AFFILIATION = "org1.department1"
USER_ROLE = "client"


class EnrollmentPhase(Enum):
    ADMIN = "admin"
    USER = "user"


class EnrollmentError(Exception):
    def __init__(self, phase: EnrollmentPhase, enrollment_id, cause):
        super().__init__(
            f"{phase.value} enrollment of {enrollment_id} failed: {cause}"
        )
        self.phase = phase
        self.enrollment_id = enrollment_id
        self.cause = cause


def create_ca_client(connection_profile, ca_name=CA_ORG1, session=None) -> CAClient:
    ca_info = connection_profile.certificate_authority(ca_name)
    url = ca_info["url"]
    trusted_roots = connection_profile.ca_tls_root_pem(ca_name)
    LOG.debug(f"CA client for {ca_info.get('caName')} at {url}")
    # The CA certificate names the container host, not localhost
    return CAClient(
        url,
        trusted_roots=trusted_roots,
        ca_name=ca_info.get("caName"),
        verify=False,
        session=session,
    )


def _to_identity(enrollment: Enrollment, msp_id) -> X509Identity:
    return X509Identity(
        certificate=enrollment.certificate,
        private_key=enrollment.key,
        msp_id=msp_id,
    )


def enroll_admin(ca_client, msp_id=DEFAULT_MSP_ID) -> Tuple[X509Identity, Wallet]:
    """
    Enrolls the bootstrap admin of the certificate authority and returns its
    identity, along with a new wallet holding it under the admin label.
    """
    wallet = Wallet()
    try:
        enrollment = ca_client.enroll(ADMIN_ENROLLMENT_ID, ADMIN_ENROLLMENT_SECRET)
    except CAClientError as e:
        LOG.error(f"Enrollment of {ADMIN_ENROLLMENT_ID} failed: {e}")
        raise EnrollmentError(EnrollmentPhase.ADMIN, ADMIN_ENROLLMENT_ID, e) from e

    identity = _to_identity(enrollment, msp_id)
    wallet.put(ADMIN_ENROLLMENT_ID, identity)
    LOG.info(f"Enrolled {ADMIN_ENROLLMENT_ID} ({msp_id})")
    return identity, wallet


def enroll_user(ca_client, wallet, msp_id=DEFAULT_MSP_ID) -> X509Identity:
    """
    Registers and enrolls the client user, as the admin held by `wallet`. The
    new identity is added to `wallet` only once enrollment succeeded.
    """
    if wallet is None:
        raise EnrollmentError(
            EnrollmentPhase.USER,
            USER_ENROLLMENT_ID,
            IdentityNotFoundError(ADMIN_ENROLLMENT_ID),
        )

    gateway = Gateway()
    try:
        gateway.connect(wallet, ADMIN_ENROLLMENT_ID)
    except IdentityNotFoundError as e:
        raise EnrollmentError(EnrollmentPhase.USER, USER_ENROLLMENT_ID, e) from e

    with gateway:
        try:
            secret = ca_client.register(
                USER_ENROLLMENT_ID,
                USER_AFFILIATION,
                USER_ROLE,
                gateway.get_identity(),
            )
            LOG.debug(f'Registered client user "{USER_ENROLLMENT_ID}" OK')
            enrollment = ca_client.enroll(USER_ENROLLMENT_ID, secret)
            LOG.debug(f'Enrolled client user "{USER_ENROLLMENT_ID}" OK')
        except CAClientError as e:
            LOG.error(f"Enrollment of {USER_ENROLLMENT_ID} failed: {e}")
            raise EnrollmentError(EnrollmentPhase.USER, USER_ENROLLMENT_ID, e) from e

    identity = _to_identity(enrollment, msp_id)
    wallet.put(USER_ENROLLMENT_ID, identity)
    LOG.info(f'Wallet import of "{USER_ENROLLMENT_ID}" OK')
    return identity
