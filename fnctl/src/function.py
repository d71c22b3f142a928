from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from fnctl.src.errors import InvalidSpecError

LOGGER = logging.getLogger(__name__)

GROUP = "fnctl.io"
VERSION = "v1"
PLURAL = "functions"
KIND = "Function"
API_VERSION = f"{GROUP}/{VERSION}"

LATEST = "latest"
NAME_LABEL = "name"
VERSION_LABEL = "version"


class FunctionState(StrEnum):
    """Lifecycle state stored in ``status.state``.

    ``CREATED`` is the empty initial state of a freshly submitted Function.
    ``DISABLED`` and ``TERMINATE`` are owned by other collaborators and are
    never written by the reconcile loop.
    """

    CREATED = ""
    PROCESSED = "processed"
    ERROR = "error"
    DISABLED = "disabled"
    TERMINATE = "terminate"


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def _is_bool(value: Any) -> bool:
    return isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_list_of_objects(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, dict) for item in value)


def _is_object_of_objects(value: Any) -> bool:
    return isinstance(value, dict) and all(isinstance(item, dict) for item in value.values())


# (attribute, JSON key, type check, expected type) for the spec fields the
# controller knows about.
_SPEC_FIELDS: tuple[tuple[str, str, Callable[[Any], bool], str], ...] = (
    ("description", "description", _is_str, "a string"),
    ("disable", "disable", _is_bool, "a boolean"),
    ("publish", "publish", _is_bool, "a boolean"),
    ("handler", "handler", _is_str, "a string"),
    ("runtime", "runtime", _is_str, "a string"),
    ("image", "image", _is_str, "a string"),
    ("env", "env", _is_list_of_objects, "a list of objects"),
    ("replicas", "replicas", _is_int, "an integer"),
    ("min_replicas", "minReplicas", _is_int, "an integer"),
    ("max_replicas", "maxReplicas", _is_int, "an integer"),
    ("http_port", "httpPort", _is_int, "an integer"),
    ("version", "version", _is_int, "an integer"),
    ("alias", "alias", _is_str, "a string"),
    ("data_bindings", "dataBindings", _is_object_of_objects, "an object of objects"),
    ("resources", "resources", _is_object_of_objects, "an object of objects"),
    ("working_dir", "workingDir", _is_str, "a string"),
)
_EXPECTED_TYPES = {key: expected for _, key, _, expected in _SPEC_FIELDS}


@dataclass
class FunctionSpec:
    """Desired state of a Function.

    Only ``version``, ``alias`` and ``publish`` carry meaning for the
    reconcile loop; the rest is handed to the deployment applier as-is.
    Keys the controller does not model are kept in ``extra`` so that a
    read-modify-write cycle never drops them. Known keys whose stored value
    has the wrong type are kept verbatim in ``invalid``; the field itself
    stays at its default and :meth:`check` reports them.
    """

    description: str = ""
    disable: bool = False
    publish: bool = False
    handler: str = ""
    runtime: str = ""
    image: str = ""
    env: list[dict[str, str]] = field(default_factory=list)
    replicas: int = 0
    min_replicas: int = 0
    max_replicas: int = 0
    http_port: int = 0
    version: int = 0
    alias: str = ""
    data_bindings: dict[str, dict[str, str]] = field(default_factory=dict)
    resources: dict[str, Any] = field(default_factory=dict)
    working_dir: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    invalid: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> FunctionSpec:
        if not isinstance(raw, dict):
            return cls()
        known = {key for _, key, _, _ in _SPEC_FIELDS}
        kwargs: dict[str, Any] = {"invalid": {}}
        for attr, key, is_valid, _ in _SPEC_FIELDS:
            value = raw.get(key)
            if value is None:
                continue
            if is_valid(value):
                kwargs[attr] = copy.deepcopy(value)
            else:
                kwargs["invalid"][key] = copy.deepcopy(value)
        kwargs["extra"] = {k: copy.deepcopy(v) for k, v in raw.items() if k not in known}
        return cls(**kwargs)

    def check(self) -> None:
        """Raise :class:`InvalidSpecError` naming every field that failed to decode."""
        if not self.invalid:
            return
        problems = "; ".join(
            f"spec.{key} must be {_EXPECTED_TYPES[key]}, got: {value!r}"
            for key, value in sorted(self.invalid.items())
        )
        raise InvalidSpecError(f"Validation failed: {problems}")

    def to_dict(self) -> dict[str, Any]:
        body = copy.deepcopy(self.extra)
        for attr, key, _, _ in _SPEC_FIELDS:
            value = getattr(self, attr)
            # Mirrors omitempty: zero values are left out of the stored object.
            if value:
                body[key] = copy.deepcopy(value)
            elif key in self.invalid:
                body[key] = copy.deepcopy(self.invalid[key])
            else:
                body.pop(key, None)
        return body


@dataclass
class FunctionStatus:
    state: FunctionState = FunctionState.CREATED
    message: str = ""
    observed_generation: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> FunctionStatus:
        if not isinstance(raw, dict):
            return cls()
        raw_state = raw.get("state") or ""
        try:
            state = FunctionState(raw_state)
        except ValueError:
            LOGGER.warning("Unknown function state %r, treating as created", raw_state)
            state = FunctionState.CREATED
        return cls(
            state=state,
            message=str(raw.get("message") or ""),
            observed_generation=str(raw.get("observedGeneration") or ""),
        )

    def to_dict(self) -> dict[str, str]:
        body: dict[str, str] = {}
        if self.state:
            body["state"] = str(self.state)
        if self.message:
            body["message"] = self.message
        if self.observed_generation:
            body["observedGeneration"] = self.observed_generation
        return body


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items()}


@dataclass
class Function:
    """A Function custom resource: identity, labels, desired spec and observed status."""

    name: str
    namespace: str = "default"
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    spec: FunctionSpec = field(default_factory=FunctionSpec)
    status: FunctionStatus = field(default_factory=FunctionStatus)

    @property
    def namespaced_name(self) -> str:
        """Identity key used by the change ignorer (``<namespace>.<name>``)."""
        return f"{self.namespace}.{self.name}"

    def set_status(self, state: FunctionState, message: str = "") -> None:
        self.status.state = state
        self.status.message = message

    def deep_copy(self) -> Function:
        return copy.deepcopy(self)

    @classmethod
    def from_dict(cls, body: dict[str, Any]) -> Function:
        metadata = body.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or "default"),
            resource_version=str(metadata.get("resourceVersion") or ""),
            labels=_string_map(metadata.get("labels")),
            annotations=_string_map(metadata.get("annotations")),
            spec=FunctionSpec.from_dict(body.get("spec")),
            status=FunctionStatus.from_dict(body.get("status")),
        )

    def to_dict(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }
