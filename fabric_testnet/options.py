# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fabric_testnet.versions import to_python_version, version_before

from loguru import logger as LOG

DEFAULT_IMAGE_NAME = "ghcr.io/hyperledger/cactus-fabric-all-in-one"
DEFAULT_IMAGE_VERSION = "2021-09-02--fix-876-supervisord-retries"

FABRIC_VERSION_ENV_VAR = "FABRIC_VERSION"
DEFAULT_ENV_VARS = {FABRIC_VERSION_ENV_VAR: "1.4.8"}

# Oldest ledger release the image layouts below were written against
MIN_SUPPORTED_FABRIC_VERSION = "1.4"

DEFAULT_LOG_LEVEL = "INFO"
LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

MIN_IMAGE_VERSION_LEN = 5

# Lowercase alphanumeric components separated by ".", "_", "__" or "-"/"--",
# optionally prefixed by a registry host (with port) and joined by "/"
_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-{1,2})[a-z0-9]+)*"
IMAGE_NAME_REGEX = re.compile(
    rf"^(?:{_COMPONENT}(?::[0-9]+)?/)?{_COMPONENT}(?:/{_COMPONENT})*$"
)


class ConfigValidationError(Exception):
    def __init__(self, msg, violations=None):
        super().__init__(msg)
        self.violations = violations or []


@dataclass
class LedgerInstanceConfig:
    publish_all_ports: bool
    image_name: str = DEFAULT_IMAGE_NAME
    image_version: str = DEFAULT_IMAGE_VERSION
    env_vars: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENV_VARS))
    log_level: str = DEFAULT_LOG_LEVEL
    emit_container_logs: bool = True

    @property
    def image_reference(self) -> str:
        return f"{self.image_name}:{self.image_version}"

    @property
    def fabric_version(self) -> str:
        return self.env_vars[FABRIC_VERSION_ENV_VAR]


def _check_env_vars(env_vars) -> List[str]:
    if not isinstance(env_vars, dict):
        return [f"env_vars must be a mapping of strings, got {type(env_vars).__name__}"]
    violations = []
    for k, v in env_vars.items():
        if not isinstance(k, str) or not k:
            violations.append(f"env_vars key {k!r} must be a non-empty string")
        if not isinstance(v, str) or not v:
            violations.append(f"env_vars[{k!r}] must be a non-empty string")
    if FABRIC_VERSION_ENV_VAR not in env_vars:
        violations.append(f"env_vars must define {FABRIC_VERSION_ENV_VAR}")
    elif isinstance(env_vars[FABRIC_VERSION_ENV_VAR], str):
        try:
            to_python_version(env_vars[FABRIC_VERSION_ENV_VAR])
        except ValueError as e:
            violations.append(f"{FABRIC_VERSION_ENV_VAR}: {e}")
    return violations


def validate_options(
    publish_all_ports=None,
    image_name: Optional[str] = None,
    image_version: Optional[str] = None,
    env_vars: Optional[Dict[str, str]] = None,
    log_level: Optional[str] = None,
    emit_container_logs=None,
) -> LedgerInstanceConfig:
    """
    Applies defaults to the options of a test ledger and validates them.

    :param publish_all_ports: Required. If True, every exposed port is published on
        a random host port, otherwise the well-known host ports are bound.
    :param image_name: Container image name (registry/path, no tag).
    :param image_version: Container image tag.
    :param env_vars: Environment of the container. Must define FABRIC_VERSION.
    :param log_level: Level used for forwarded container output.
    :param emit_container_logs: Unless strictly False, container output is forwarded.
    :return: the normalised :py:class:`LedgerInstanceConfig`.
    :raises ConfigValidationError: listing every violated constraint.
    """
    image_name = DEFAULT_IMAGE_NAME if image_name is None else image_name
    image_version = DEFAULT_IMAGE_VERSION if image_version is None else image_version
    env_vars = dict(DEFAULT_ENV_VARS) if env_vars is None else env_vars
    log_level = DEFAULT_LOG_LEVEL if log_level is None else log_level
    emit_container_logs = emit_container_logs is not False

    violations = []
    if not isinstance(publish_all_ports, bool):
        violations.append("publish_all_ports is required and must be a boolean")
    if not isinstance(image_version, str) or len(image_version) < MIN_IMAGE_VERSION_LEN:
        violations.append(
            f"image_version must be a string of at least {MIN_IMAGE_VERSION_LEN} characters"
        )
    if not isinstance(image_name, str) or not IMAGE_NAME_REGEX.match(image_name):
        violations.append(f"image_name {image_name!r} is not a valid image name")
    violations += _check_env_vars(env_vars)
    if not isinstance(log_level, str) or log_level.upper() not in LOG_LEVELS:
        violations.append(f"log_level {log_level!r} is not one of {', '.join(LOG_LEVELS)}")

    if violations:
        raise ConfigValidationError(
            f"Invalid test ledger options: {'; '.join(violations)}", violations
        )

    config = LedgerInstanceConfig(
        publish_all_ports=publish_all_ports,
        image_name=image_name,
        image_version=image_version,
        env_vars=dict(env_vars),
        log_level=log_level.upper(),
        emit_container_logs=emit_container_logs,
    )

    if version_before(config.fabric_version, MIN_SUPPORTED_FABRIC_VERSION):
        LOG.warning(f"This version of Fabric {config.fabric_version} is unsupported")

    return config
