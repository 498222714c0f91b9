# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import io
from contextlib import contextmanager
from dataclasses import dataclass

import paramiko

from loguru import logger as LOG

SSH_CONNECT_TIMEOUT_S = 10

_KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


@dataclass
class SshConfig:
    host: str
    port: int
    username: str
    #: PEM/OpenSSH private key text
    private_key: str

    def load_private_key(self) -> paramiko.PKey:
        for key_class in _KEY_CLASSES:
            try:
                return key_class.from_private_key(io.StringIO(self.private_key))
            except (paramiko.SSHException, ValueError):
                continue
        raise ValueError("Unsupported SSH private key format")

    def connect(self, timeout=SSH_CONNECT_TIMEOUT_S) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        LOG.debug(f"[{self.host}:{self.port}] connect as {self.username}")
        client.connect(
            self.host,
            port=self.port,
            username=self.username,
            pkey=self.load_private_key(),
            timeout=timeout,
            allow_agent=False,
            look_for_keys=False,
        )
        return client


@contextmanager
def ssh_session(config: SshConfig):
    client = config.connect()
    try:
        yield client
    finally:
        client.close()
