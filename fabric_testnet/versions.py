# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from packaging.version import Version, InvalidVersion  # type: ignore

# Ledger releases at or after this one ship the "test-network" sample layout
TEST_NETWORK_LAYOUT_VERSION = "2.0"


def remove_prefix(s, prefix):
    if s.startswith(prefix):
        return s[len(prefix) :]
    return s


def replace_char(s, n, c):
    return s[:n] + str(c) + s[n + 1 :]


def to_python_version(original):
    """
    Converts a ledger release string (e.g. "1.4.8", "v2.2.0", "2.3.0-beta")
    to a comparable :py:class:`packaging.version.Version`.
    """
    if original is None:
        raise ValueError("Cannot convert None to a Version")
    unprefixed = remove_prefix(original.strip(), "v")

    # Try to parse this as a Version (with automatic normalisation).
    # If it fails, try making part of the suffix a local version specifier (+foo).
    # Keep expanding this suffix until you get a valid version, or run out of attempts.
    next_attempt = unprefixed
    next_replace = len(next_attempt)
    plus_remover = str.maketrans({ord("+"): ""})
    while True:
        try:
            return Version(next_attempt)
        except InvalidVersion:
            next_replace = unprefixed.rfind("-", 0, next_replace)
            if next_replace == -1:
                break
            # Remove any existing +s, and convert one - to a +
            next_attempt = replace_char(
                unprefixed.translate(plus_remover), next_replace, "+"
            )

    raise ValueError(f"Cannot convert '{original}' to a Version")


def version_before(version, cmp_version):
    return to_python_version(version) < to_python_version(cmp_version)


def uses_test_network_layout(fabric_version):
    return not version_before(fabric_version, TEST_NETWORK_LAYOUT_VERSION)
