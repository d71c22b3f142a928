from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fnctl.src.deployer import DeploymentApplier, DeploymentRef
from fnctl.src.errors import (
    ApplyError,
    ConfigError,
    PublishError,
    StoreError,
    ValidationError,
)
from fnctl.src.function import LATEST, NAME_LABEL, VERSION_LABEL, Function, FunctionState
from fnctl.src.ignorer import DEFAULT_MAX_ENTRIES, ChangeIgnorer
from fnctl.src.metrics import METRICS
from fnctl.src.store import FunctionClient
from fnctl.src.versioning import (
    compute_snapshot,
    next_version_number,
    parse_name_and_version,
    validate_alias,
    validate_publish,
    validate_version,
)
from fnctl.src.watcher import Change, ChangeKind

if TYPE_CHECKING:
    from fnctl.src.kube import KubeClients
    from fnctl.src.watcher import ChangeWatcher

# States owned by other collaborators; the reconcile loop leaves them alone.
_UNMANAGED_STATES = frozenset({FunctionState.DISABLED, FunctionState.TERMINATE})


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of a single reconcile pass over one Function."""

    namespaced_name: str
    state: FunctionState
    deployment: DeploymentRef | None = None
    snapshot_name: str | None = None


@dataclass(frozen=True)
class ControllerConfig:
    namespace: str = "default"
    health_port: int = 8080
    register_crd: bool = True
    resource_poll_interval_seconds: float = 0.1
    resource_wait_timeout_seconds: float = 60.0
    delete_poll_interval_seconds: float = 1.0
    delete_wait_timeout_seconds: float = 60.0
    watch_timeout_seconds: int = 30
    ignorer_max_entries: int = DEFAULT_MAX_ENTRIES


class FunctionController:
    """Drives Functions from their declared spec to a running deployment.

    Each change is validated, normalised onto the latest track or kept as a
    published snapshot, applied through the :class:`DeploymentApplier` and
    finally recorded in the Function's status. Every status write is
    announced to the :class:`ChangeIgnorer` first so that the watch echo of
    that write is not reconciled a second time.
    """

    def __init__(
        self,
        client: FunctionClient,
        applier: DeploymentApplier,
        ignorer: ChangeIgnorer,
        config: ControllerConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.applier = applier
        self.ignorer = ignorer
        self.config = config or ControllerConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _write_status(self, function: Function) -> Function:
        """Persist ``function`` and re-key the expected echo to the stored version.

        The current resource version is pushed before the write. Once the
        store answers, that entry is swapped for the version the write
        produced, which is the one the watch will deliver. A failed write
        retracts the entry.
        """
        key = function.namespaced_name
        pushed_version = function.resource_version
        self.ignorer.push(key, pushed_version)
        try:
            stored = self.client.update(function)
        except StoreError:
            self.ignorer.pop(key, pushed_version)
            raise

        if stored.resource_version and stored.resource_version != pushed_version:
            self.ignorer.pop(key, pushed_version)
            self.ignorer.push(key, stored.resource_version)
            function.resource_version = stored.resource_version
        return stored

    def reconcile(self, function: Function) -> ReconcileResult:
        """Converge one Function.

        Raises :class:`ValidationError` (status set to error in memory only),
        :class:`ApplyError` (error status persisted), :class:`StoreError`, or
        :class:`PublishError` (processed status persisted with the failure as
        its message).
        """
        base_name, version = parse_name_and_version(
            function.name, function.labels, function.spec.version
        )

        try:
            function.spec.check()
            validate_alias(function.spec.alias)
            if version is None:
                validate_version(function.spec.version)
            else:
                validate_publish(function, version)
        except ValidationError as exc:
            function.set_status(FunctionState.ERROR, str(exc))
            raise

        function.labels[NAME_LABEL] = base_name
        if version is None:
            function.spec.alias = function.spec.alias or LATEST
            function.labels[VERSION_LABEL] = LATEST
        else:
            function.labels[VERSION_LABEL] = str(version)

        publish = function.spec.publish
        function.spec.publish = False

        try:
            deployment = self.applier.create_or_update(function)
        except ApplyError as exc:
            function.set_status(FunctionState.ERROR, str(exc))
            try:
                self._write_status(function)
            except StoreError:
                self.logger.exception(
                    "Failed to record apply error for %s", function.namespaced_name
                )
            raise

        function.set_status(FunctionState.PROCESSED)
        function.status.observed_generation = function.resource_version
        self._write_status(function)
        self.logger.info("Function %s processed", function.namespaced_name)

        snapshot_name = None
        if publish:
            try:
                snapshot_name = self._publish(function, base_name)
            except PublishError as exc:
                # State stays processed; the message carries the failure.
                function.status.message = str(exc)
                try:
                    self._write_status(function)
                except StoreError:
                    self.logger.exception(
                        "Failed to record publish error for %s", function.namespaced_name
                    )
                raise

        return ReconcileResult(
            namespaced_name=function.namespaced_name,
            state=function.status.state,
            deployment=deployment,
            snapshot_name=snapshot_name,
        )

    def _publish(self, function: Function, base_name: str) -> str:
        try:
            existing = self.client.list(
                function.namespace, label_selector=f"{NAME_LABEL}={base_name}"
            )
            snapshot = compute_snapshot(function, next_version_number(existing, base_name))
            created = self.client.create(snapshot)
        except (StoreError, ValidationError) as exc:
            raise PublishError(
                f"Failed to publish function {function.namespaced_name}: {exc}"
            ) from exc

        METRICS.snapshots_total.inc()
        self.logger.info(
            "Published function %s as %s", function.namespaced_name, created.name or snapshot.name
        )
        return created.name or snapshot.name

    @staticmethod
    def _spec_changed(previous: Function, current: Function) -> bool:
        return previous.spec != current.spec or previous.labels != current.labels

    def handle_change(self, change: Change) -> ReconcileResult | None:
        """Process a single change from the watcher.

        Echoes of the controller's own writes, deletions, functions owned by
        other collaborators and status-only updates are filtered out. Errors
        are logged and counted, never raised, so one broken Function cannot
        stop the loop.
        """
        function = change.object
        key = function.namespaced_name

        if self.ignorer.pop(key, function.resource_version):
            self.logger.debug("Ignoring echo of own write %s@%s", key, function.resource_version)
            METRICS.ignored_changes_total.inc()
            return None

        if change.kind is ChangeKind.DELETED:
            forgotten = self.ignorer.forget(key)
            self.logger.info("Function %s deleted (%d pending echoes dropped)", key, forgotten)
            METRICS.reconciles_total.labels(result="deleted").inc()
            return None

        if function.status.state in _UNMANAGED_STATES:
            self.logger.info("Skipping function %s in state %s", key, function.status.state)
            METRICS.reconciles_total.labels(result="skipped").inc()
            return None

        if (
            change.kind is ChangeKind.UPDATED
            and change.previous is not None
            and function.status.state != FunctionState.CREATED
            and not self._spec_changed(change.previous, function)
        ):
            self.logger.debug("Ignoring status-only update of %s", key)
            METRICS.reconciles_total.labels(result="skipped").inc()
            return None

        try:
            with METRICS.reconcile_duration_seconds.time():
                result = self.reconcile(function)
        except ValidationError as exc:
            METRICS.errors_total.labels(kind="validation").inc()
            self.logger.warning("Function %s failed validation: %s", key, exc)
            try:
                self._write_status(function)
            except StoreError:
                METRICS.errors_total.labels(kind="store").inc()
                self.logger.exception("Failed to record validation error for %s", key)
            return self._failed(function)
        except ApplyError:
            METRICS.errors_total.labels(kind="apply").inc()
            self.logger.exception("Failed to apply function %s", key)
            return self._failed(function)
        except PublishError:
            METRICS.errors_total.labels(kind="publish").inc()
            self.logger.exception("Failed to publish function %s", key)
            return self._failed(function)
        except StoreError:
            METRICS.errors_total.labels(kind="store").inc()
            self.logger.exception("Failed to update function %s", key)
            return self._failed(function)
        except Exception:
            METRICS.errors_total.labels(kind="unexpected").inc()
            self.logger.exception("Unexpected error reconciling function %s", key)
            return self._failed(function)

        METRICS.reconciles_total.labels(result=str(result.state)).inc()
        return result

    @staticmethod
    def _failed(function: Function) -> ReconcileResult:
        METRICS.reconciles_total.labels(result="error").inc()
        return ReconcileResult(
            namespaced_name=function.namespaced_name,
            state=function.status.state,
        )

    def run(self, watcher: ChangeWatcher, stop_event: threading.Event) -> None:
        """Consume the watcher's changes in order until stopped."""
        self.logger.info("Reconcile loop started for namespace %s", self.config.namespace)
        for change in watcher.changes(stop_event):
            self.handle_change(change)
            METRICS.ignorer_entries.set(len(self.ignorer))
        self.logger.info("Reconcile loop stopped")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum:g}, got: {value:g}")
    return value


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_config_from_env() -> ControllerConfig:
    """Read :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``  namespace whose Functions are reconciled (``default``).
        ``HEALTH_PORT``      health/metrics port (``8080``).
        ``REGISTER_CRD``     register the Function resource on startup (``true``).
        ``RESOURCE_POLL_INTERVAL_SECONDS`` / ``RESOURCE_WAIT_TIMEOUT_SECONDS``
                             resource readiness polling (``0.1`` / ``60``).
        ``DELETE_POLL_INTERVAL_SECONDS`` / ``DELETE_WAIT_TIMEOUT_SECONDS``
                             waiting out terminating deployments (``1`` / ``60``).
        ``WATCH_TIMEOUT_SECONDS`` server-side timeout per watch stream (``30``).
        ``IGNORER_MAX_ENTRIES``   capacity of the echo ignorer (``4096``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "default")
    if not namespace.strip():
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    return ControllerConfig(
        namespace=namespace.strip(),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
        register_crd=env_bool("REGISTER_CRD", default=True),
        resource_poll_interval_seconds=env_float(
            "RESOURCE_POLL_INTERVAL_SECONDS", 0.1, minimum=0.01
        ),
        resource_wait_timeout_seconds=env_float("RESOURCE_WAIT_TIMEOUT_SECONDS", 60.0, minimum=0),
        delete_poll_interval_seconds=env_float("DELETE_POLL_INTERVAL_SECONDS", 1.0, minimum=0.01),
        delete_wait_timeout_seconds=env_float("DELETE_WAIT_TIMEOUT_SECONDS", 60.0, minimum=0),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        ignorer_max_entries=env_int("IGNORER_MAX_ENTRIES", DEFAULT_MAX_ENTRIES, minimum=1),
    )


def build_controller_from_env(clients: KubeClients) -> FunctionController:
    """Construct a :class:`FunctionController` wired to the cluster from environment variables."""
    config = load_config_from_env()
    client = FunctionClient(
        custom_api=clients.custom_api,
        apiextensions_api=clients.apiextensions_api,
    )
    applier = DeploymentApplier(
        apps_api=clients.apps_api,
        core_api=clients.core_api,
        autoscaling_api=clients.autoscaling_api,
        delete_poll_interval_seconds=config.delete_poll_interval_seconds,
        delete_wait_timeout_seconds=config.delete_wait_timeout_seconds,
    )
    return FunctionController(
        client=client,
        applier=applier,
        ignorer=ChangeIgnorer(max_entries=config.ignorer_max_entries),
        config=config,
    )
