"""Naming, aliasing and publishing rules for Functions.

A Function lives either on the mutable *latest* track (``<base>``,
``spec.version == 0``, alias ``latest``) or is an immutable published
snapshot (``<base>-<n>``, ``spec.version == n``). Everything here is pure:
no I/O, no logging, the reconcile loop decides what to do with the results.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

from fnctl.src.errors import InvalidAliasError, InvalidVersionError
from fnctl.src.function import (
    LATEST,
    NAME_LABEL,
    VERSION_LABEL,
    Function,
    FunctionStatus,
)

VERSION_SEPARATOR = "-"
# Older objects carry the base name under this label instead of ``name``.
LEGACY_NAME_LABEL = "function"

_NUMERIC = re.compile(r"[0-9]+")


def versioned_name(base_name: str, version: int) -> str:
    return f"{base_name}{VERSION_SEPARATOR}{version}"


def base_name_label(labels: Mapping[str, str]) -> str | None:
    return labels.get(NAME_LABEL) or labels.get(LEGACY_NAME_LABEL)


def parse_name_and_version(
    name: str, labels: Mapping[str, str], spec_version: int
) -> tuple[str, int | None]:
    """Split ``name`` into ``(base_name, version)``.

    The numeric suffix is only a version marker when the base-name label
    equals the prefix and ``spec.version`` equals the suffix, with
    ``spec.version > 0``. A snapshot published by the controller also carries
    its number in the ``version`` label, which is accepted in place of the
    positive-version requirement (snapshot ``0``). In every other case the
    whole string is the base name and the version is ``None``.
    """
    prefix, separator, suffix = name.rpartition(VERSION_SEPARATOR)
    if not separator or not prefix or not _NUMERIC.fullmatch(suffix):
        return name, None

    version = int(suffix)
    if base_name_label(labels) != prefix or spec_version != version:
        return name, None

    if version > 0 or labels.get(VERSION_LABEL) == suffix:
        return prefix, version
    return name, None


def validate_alias(alias: str) -> None:
    if alias not in ("", LATEST):
        raise InvalidAliasError(f"Alias must be empty or {LATEST!r}, got: {alias!r}")


def validate_version(spec_version: int) -> None:
    """Reject a user-supplied version on the latest track.

    Only the controller assigns versions, by publishing.
    """
    if spec_version != 0:
        raise InvalidVersionError(
            f"Validation failed: spec.version must not be set on the latest "
            f"track, got: {spec_version}"
        )


def validate_publish(function: Function, version: int | None) -> None:
    if version is not None and function.spec.publish:
        raise InvalidVersionError(
            f"Validation failed: {function.name} is a published version and "
            "cannot be published again"
        )


def next_version_number(existing: Iterable[Function], base_name: str) -> int:
    """Return the number the next snapshot of ``base_name`` will get.

    Numbering starts at 0 and continues after the highest published version.
    """
    versions = []
    for function in existing:
        parsed_base, version = parse_name_and_version(
            function.name, function.labels, function.spec.version
        )
        if parsed_base == base_name and version is not None:
            versions.append(version)
    if not versions:
        return 0
    return max(versions) + 1


def compute_snapshot(function: Function, next_version: int) -> Function:
    """Return an immutable published copy of a latest-track Function.

    The copy is named ``<base>-<n>``, is pinned to ``spec.version = n``, has
    the publish trigger and alias cleared, and starts over in the initial
    state so that it is reconciled (and waited on) like any new Function.
    """
    base_name, version = parse_name_and_version(
        function.name, function.labels, function.spec.version
    )
    if version is not None:
        raise InvalidVersionError(f"{function.name} is already a published version")
    if next_version < 0:
        raise InvalidVersionError(f"Version numbers are non-negative, got: {next_version}")

    snapshot = function.deep_copy()
    snapshot.name = versioned_name(base_name, next_version)
    snapshot.resource_version = ""
    snapshot.spec.version = next_version
    snapshot.spec.publish = False
    snapshot.spec.alias = ""
    snapshot.labels.pop(LEGACY_NAME_LABEL, None)
    snapshot.labels[NAME_LABEL] = base_name
    snapshot.labels[VERSION_LABEL] = str(next_version)
    snapshot.status = FunctionStatus()
    return snapshot
