from __future__ import annotations

import pytest

from fnctl.src.errors import InvalidAliasError, InvalidVersionError
from fnctl.src.function import Function, FunctionSpec, FunctionState, FunctionStatus
from fnctl.src.versioning import (
    compute_snapshot,
    next_version_number,
    parse_name_and_version,
    validate_alias,
    validate_publish,
    validate_version,
    versioned_name,
)

# ---------------------------------------------------------------------------
# parse_name_and_version()
# ---------------------------------------------------------------------------


def test_parse_plain_name_has_no_version() -> None:
    assert parse_name_and_version("funcname", {}, 0) == ("funcname", None)


def test_parse_versioned_name_with_matching_legacy_label() -> None:
    assert parse_name_and_version(
        "111ValidName123-30", {"function": "111ValidName123"}, 30
    ) == ("111ValidName123", 30)


def test_parse_versioned_name_with_matching_name_label() -> None:
    assert parse_name_and_version("funcname-7", {"name": "funcname"}, 7) == ("funcname", 7)


def test_parse_numeric_suffix_without_label_is_part_of_base_name() -> None:
    assert parse_name_and_version("funcname-30", {}, 0) == ("funcname-30", None)


def test_parse_suffix_not_matching_spec_version_is_part_of_base_name() -> None:
    assert parse_name_and_version("funcname-30", {"name": "funcname"}, 31) == (
        "funcname-30",
        None,
    )


def test_parse_label_not_matching_prefix_is_part_of_base_name() -> None:
    assert parse_name_and_version("funcname-3", {"name": "other"}, 3) == ("funcname-3", None)


def test_parse_non_numeric_suffix_is_part_of_base_name() -> None:
    assert parse_name_and_version("func-name", {"name": "func"}, 0) == ("func-name", None)


def test_parse_zero_suffix_requires_version_label() -> None:
    assert parse_name_and_version("funcname-0", {"name": "funcname"}, 0) == ("funcname-0", None)
    assert parse_name_and_version(
        "funcname-0", {"name": "funcname", "version": "0"}, 0
    ) == ("funcname", 0)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("alias", ["", "latest"])
def test_validate_alias_accepts_empty_and_latest(alias: str) -> None:
    validate_alias(alias)


def test_validate_alias_rejects_anything_else() -> None:
    with pytest.raises(InvalidAliasError, match="wrong"):
        validate_alias("wrong")


def test_validate_version_rejects_version_on_latest_track() -> None:
    validate_version(0)
    with pytest.raises(InvalidVersionError, match="Validation failed"):
        validate_version(50)


def test_validate_publish_rejects_publishing_a_snapshot() -> None:
    snapshot = Function(name="funcname-2", spec=FunctionSpec(version=2, publish=True))

    with pytest.raises(InvalidVersionError):
        validate_publish(snapshot, 2)

    validate_publish(Function(name="funcname", spec=FunctionSpec(publish=True)), None)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def _snapshot(base: str, version: int) -> Function:
    return Function(
        name=versioned_name(base, version),
        labels={"name": base, "version": str(version)},
        spec=FunctionSpec(version=version),
    )


def test_next_version_number_starts_at_zero() -> None:
    assert next_version_number([Function(name="funcname")], "funcname") == 0


def test_next_version_number_continues_after_highest() -> None:
    existing = [Function(name="funcname"), _snapshot("funcname", 0), _snapshot("funcname", 4)]

    assert next_version_number(existing, "funcname") == 5


def test_next_version_number_ignores_other_base_names() -> None:
    assert next_version_number([_snapshot("other", 9)], "funcname") == 0


def test_compute_snapshot_pins_version_and_clears_triggers() -> None:
    latest = Function(
        name="funcname",
        namespace="funcnamespace",
        resource_version="123",
        labels={"name": "funcname", "version": "latest", "team": "a"},
        spec=FunctionSpec(image="repo/func:1", publish=True, alias="latest"),
        status=FunctionStatus(state=FunctionState.PROCESSED, observed_generation="123"),
    )

    snapshot = compute_snapshot(latest, 0)

    assert snapshot.name == "funcname-0"
    assert snapshot.namespace == "funcnamespace"
    assert snapshot.resource_version == ""
    assert snapshot.spec.version == 0
    assert snapshot.spec.publish is False
    assert snapshot.spec.alias == ""
    assert snapshot.spec.image == "repo/func:1"
    assert snapshot.labels == {"name": "funcname", "version": "0", "team": "a"}
    assert snapshot.status == FunctionStatus()
    assert parse_name_and_version(snapshot.name, snapshot.labels, snapshot.spec.version) == (
        "funcname",
        0,
    )
    # The source object is untouched.
    assert latest.spec.publish is True
    assert latest.labels["version"] == "latest"


def test_compute_snapshot_replaces_legacy_label() -> None:
    latest = Function(name="funcname", labels={"function": "funcname"})

    snapshot = compute_snapshot(latest, 3)

    assert snapshot.labels == {"name": "funcname", "version": "3"}


def test_compute_snapshot_of_snapshot_is_rejected() -> None:
    with pytest.raises(InvalidVersionError):
        compute_snapshot(_snapshot("funcname", 2), 3)


def test_compute_snapshot_rejects_negative_version() -> None:
    with pytest.raises(InvalidVersionError):
        compute_snapshot(Function(name="funcname"), -1)
