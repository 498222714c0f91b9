# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import paramiko
import pytest
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)

from fabric_testnet.ssh import SshConfig, ssh_session


def traditional_pem(key):
    return key.private_bytes(
        Encoding.PEM, PrivateFormat.TraditionalOpenSSL, NoEncryption()
    ).decode()


@pytest.fixture
def rsa_config():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return SshConfig("localhost", 40022, "root", traditional_pem(key))


def test_rsa_key(rsa_config):
    assert isinstance(rsa_config.load_private_key(), paramiko.RSAKey)


def test_ecdsa_key():
    key = ec.generate_private_key(ec.SECP256R1())
    config = SshConfig("localhost", 40022, "root", traditional_pem(key))
    assert isinstance(config.load_private_key(), paramiko.ECDSAKey)


def test_unsupported_key():
    config = SshConfig("localhost", 40022, "root", "not a key")
    with pytest.raises(ValueError):
        config.load_private_key()


def test_session_connects_with_container_key(rsa_config, monkeypatch):
    connections = []

    def connect(self, hostname, **kwargs):
        connections.append((hostname, kwargs))

    monkeypatch.setattr(paramiko.SSHClient, "connect", connect)
    with ssh_session(rsa_config) as client:
        assert isinstance(client, paramiko.SSHClient)

    hostname, kwargs = connections[0]
    assert hostname == "localhost"
    assert kwargs["port"] == 40022
    assert kwargs["username"] == "root"
    assert isinstance(kwargs["pkey"], paramiko.RSAKey)
    assert kwargs["allow_agent"] is False
    assert kwargs["look_for_keys"] is False
