# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import base64
import binascii
import json
from dataclasses import dataclass
from typing import List, Optional, Tuple

import requests
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import (
    load_pem_private_key,
    Encoding,
    PrivateFormat,
    NoEncryption,
)

from loguru import logger as LOG  # type: ignore

CA_API_PREFIX = "/api/v1"

DEFAULT_REQUEST_TIMEOUT_SEC = 10

CONTENT_TYPE_JSON = "application/json"

# Group orders, used to produce low-S ECDSA signatures (required by the CA)
CURVE_ORDERS = {
    "secp256r1": 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551,
    "secp384r1": 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFC7634D81F4372DDF581A0DB248B0A77AECEC196ACCC52973,
}


class CAClientError(Exception):
    """
    Exception raised when the certificate authority cannot be reached, rejects
    a request, or answers with an unexpected payload.
    """

    def __init__(self, msg, status_code=None, errors=None):
        super().__init__(msg)
        self.status_code = status_code
        self.errors = errors or []


@dataclass
class Enrollment:
    """
    Result of a successful enrollment against the certificate authority.
    """

    #: Signed PEM certificate
    certificate: str
    #: PEM (PKCS8) private key matching the certificate
    key: str
    #: PEM chain of the issuing CA, if returned
    ca_chain: Optional[str] = None


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def generate_csr(enrollment_id: str, curve=ec.SECP256R1) -> Tuple[str, str]:
    priv = ec.generate_private_key(curve=curve(), backend=default_backend())
    priv_pem = priv.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    ).decode("ascii")
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, enrollment_id)])
        )
        .sign(priv, hashes.SHA256(), default_backend())
    )
    return priv_pem, csr.public_bytes(Encoding.PEM).decode("ascii")


def sign_low_s(key_pem: str, payload: bytes) -> bytes:
    key = load_pem_private_key(key_pem.encode("ascii"), None, default_backend())
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("Only EC keys can sign certificate authority requests")
    order = CURVE_ORDERS[key.curve.name]
    r, s = decode_dss_signature(key.sign(payload, ec.ECDSA(hashes.SHA256())))
    if s > order // 2:
        s = order - s
    return encode_dss_signature(r, s)


def generate_auth_token(
    cert_pem: str, key_pem: str, method: str, uri: str, body: bytes
) -> str:
    """
    Token authenticating a privileged request on behalf of the holder of
    `cert_pem`: the certificate and a signature over the method, URI, body and
    certificate.
    """
    b64_cert = _b64(cert_pem.encode("ascii"))
    payload = f"{method}.{_b64(uri.encode())}.{_b64(body)}.{b64_cert}"
    return f"{b64_cert}.{_b64(sign_low_s(key_pem, payload.encode('ascii')))}"


class CAClient:
    """
    Client of the certificate authority REST API, limited to registration and
    enrollment of identities.

    :param str url: Base URL of the certificate authority (e.g. https://localhost:7054).
    :param str trusted_roots: PEM TLS root certificate(s) of the certificate authority.
    :param str ca_name: Name of the CA to address on a multi-CA server.
    :param verify: TLS verification setting passed to requests.
    """

    def __init__(
        self,
        url: str,
        trusted_roots: Optional[str] = None,
        ca_name: Optional[str] = None,
        verify=False,
        session: Optional[requests.Session] = None,
    ):
        self.url = url.rstrip("/")
        self.trusted_roots = trusted_roots
        self.ca_name = ca_name
        self.session = session or requests.Session()
        self.session.verify = verify

    def _post(self, api_method: str, body: bytes, auth=None, headers=None) -> dict:
        path = f"{CA_API_PREFIX}/{api_method}"
        extra_headers = {"content-type": CONTENT_TYPE_JSON}
        extra_headers.update(headers or {})
        try:
            response = self.session.post(
                f"{self.url}{path}",
                data=body,
                auth=auth,
                headers=extra_headers,
                timeout=DEFAULT_REQUEST_TIMEOUT_SEC,
            )
        except requests.exceptions.RequestException as e:
            raise CAClientError(f"POST {path} to {self.url} failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise CAClientError(
                f"POST {path} returned a non-JSON body", response.status_code
            ) from e
        if not isinstance(payload, dict):
            raise CAClientError(
                f"POST {path} returned an unexpected body", response.status_code
            )

        if response.status_code // 100 != 2 or not payload.get("success", False):
            errors = payload.get("errors") or []
            raise CAClientError(
                f"POST {path} failed with status {response.status_code}: {errors}",
                response.status_code,
                errors,
            )
        LOG.debug(f"POST {path}: {response.status_code}")
        result = payload.get("result") or {}
        if not isinstance(result, dict):
            raise CAClientError(
                f"POST {path} returned an unexpected result: {result!r}",
                response.status_code,
            )
        return result

    def _body(self, request: dict) -> bytes:
        if self.ca_name:
            request["caname"] = self.ca_name
        return json.dumps(request).encode()

    def enroll(self, enrollment_id: str, enrollment_secret: str) -> Enrollment:
        key_pem, csr_pem = generate_csr(enrollment_id)
        body = self._body({"certificate_request": csr_pem})
        result = self._post("enroll", body, auth=(enrollment_id, enrollment_secret))
        try:
            certificate = base64.b64decode(result["Cert"]).decode("ascii")
            ca_chain = (result.get("ServerInfo") or {}).get("CAChain")
            if ca_chain:
                ca_chain = base64.b64decode(ca_chain).decode("ascii")
        except (
            KeyError,
            TypeError,
            AttributeError,
            binascii.Error,
            UnicodeDecodeError,
        ) as e:
            raise CAClientError(f"Malformed enrollment response: {e!r}") from e
        return Enrollment(certificate=certificate, key=key_pem, ca_chain=ca_chain)

    def register(
        self,
        enrollment_id: str,
        affiliation: str,
        role: str,
        registrar,
        max_enrollments: Optional[int] = None,
        attrs: Optional[List[dict]] = None,
    ) -> str:
        """
        Registers a new identity, authenticated as `registrar` (an identity with
        `certificate` and `private_key` PEMs). Returns the enrollment secret.
        """
        request = {
            "id": enrollment_id,
            "type": role,
            "affiliation": affiliation,
            "attrs": attrs or [],
        }
        if max_enrollments is not None:
            request["max_enrollments"] = max_enrollments
        body = self._body(request)
        try:
            token = generate_auth_token(
                registrar.certificate,
                registrar.private_key,
                "POST",
                f"{CA_API_PREFIX}/register",
                body,
            )
        except (ValueError, TypeError) as e:
            raise CAClientError(f"Cannot sign registration request: {e}") from e
        result = self._post("register", body, headers={"Authorization": token})
        secret = result.get("secret")
        if not isinstance(secret, str) or not secret:
            raise CAClientError(f"Malformed registration response: secret {secret!r}")
        return secret
