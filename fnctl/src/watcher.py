from __future__ import annotations

import logging
import queue
import random
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from fnctl.src.function import Function
from fnctl.src.metrics import METRICS
from fnctl.src.store import FunctionClient


class ChangeKind(StrEnum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class Change:
    """One typed change notification for a Function.

    ``previous`` is the last version the watcher saw before an update, when
    it saw one.
    """

    kind: ChangeKind
    object: Function
    previous: Function | None = None


_EVENT_KINDS = {
    "ADDED": ChangeKind.ADDED,
    "MODIFIED": ChangeKind.UPDATED,
    "DELETED": ChangeKind.DELETED,
}


class ChangeWatcher:
    """Turns the Function list/watch API into an ordered stream of :class:`Change`.

    A background thread runs :meth:`run_forever` and feeds a queue; the
    single consumer reads it through :meth:`changes`. Delivery order is the
    order the API server emitted the events in.

    Key internal state:
        ``_last_seen``
            Maps Function name to the last delivered object. It provides
            ``Change.previous`` and is the baseline for the diff after a
            ``410 Gone`` re-list.
    """

    def __init__(
        self,
        client: FunctionClient,
        namespace: str,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._queue: queue.Queue[Change] = queue.Queue()
        self._last_seen: dict[str, Function] = {}
        self.ready = threading.Event()
        self.finished = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def start(self, stop_event: threading.Event | None = None) -> threading.Thread:
        """Launch the subscription thread and return it."""
        self._thread = threading.Thread(
            target=self.run_forever,
            args=(stop_event,),
            name="fnctl-watcher",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def changes(
        self, stop_event: threading.Event, poll_interval: float = 0.5
    ) -> Iterator[Change]:
        """Yield changes in delivery order until stopped.

        Ends when ``stop_event`` is set, or when the subscription thread has
        finished and every queued change was handed out.
        """
        while not stop_event.is_set():
            try:
                change = self._queue.get(timeout=poll_interval)
            except queue.Empty:
                if self.finished.is_set() and self._queue.empty():
                    return
                continue
            METRICS.queue_depth.set(self._queue.qsize())
            yield change

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _emit(self, kind: ChangeKind, function: Function, previous: Function | None = None) -> None:
        self._queue.put(Change(kind=kind, object=function, previous=previous))
        METRICS.queue_depth.set(self._queue.qsize())

    def _observe(self, kind: ChangeKind, function: Function) -> None:
        """Update the last-seen cache and enqueue the matching change."""
        if kind is ChangeKind.DELETED:
            self._last_seen.pop(function.name, None)
            self._emit(ChangeKind.DELETED, function)
            return

        previous = self._last_seen.get(function.name)
        self._last_seen[function.name] = function
        if previous is None:
            kind = ChangeKind.ADDED
        self._emit(kind, function, previous if kind is ChangeKind.UPDATED else None)

    def _sync_from_list(self, functions: list[Function]) -> None:
        """Reconcile the last-seen cache with a full listing.

        New names are delivered as added, changed resource versions as
        updated and names that vanished as deleted. Unchanged objects
        produce nothing, so the initial list delivers every Function once.
        """
        listed = {function.name: function for function in functions}
        for name, function in listed.items():
            previous = self._last_seen.get(name)
            if previous is not None and previous.resource_version == function.resource_version:
                continue
            self._observe(ChangeKind.UPDATED, function)

        for name in [name for name in self._last_seen if name not in listed]:
            gone = self._last_seen[name]
            self.logger.info("Function %s disappeared while the watch was down", gone.namespaced_name)
            self._observe(ChangeKind.DELETED, gone)

    def _handle_event(self, event: dict[str, Any]) -> str | None:
        """Translate one raw watch event and return its resource version, if any."""
        event_type = str(event.get("type", ""))
        raw = event.get("object")
        if not isinstance(raw, dict):
            return None

        if event_type == "ERROR":
            code = raw.get("code")
            raise ApiException(
                status=code if isinstance(code, int) else 500,
                reason=str(raw.get("message") or raw.get("reason") or "watch error"),
            )

        resource_version = (raw.get("metadata") or {}).get("resourceVersion")
        kind = _EVENT_KINDS.get(event_type)
        if kind is None:
            # BOOKMARK events only move the resource version forward.
            return resource_version

        self._observe(kind, Function.from_dict(raw))
        return resource_version

    def _relist(self) -> str | None:
        functions, resource_version = self.client.list_for_watch(self.namespace)
        self._sync_from_list(functions)
        return resource_version

    def _access_denied(self, status: int | None, step: str) -> bool:
        if status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            step,
            status,
        )
        self.ready.clear()
        return True

    @staticmethod
    def _api_status(exc: BaseException) -> int | None:
        """Return the HTTP status behind ``exc`` (``ApiException`` or a wrapped store error)."""
        status = getattr(exc, "status", None)
        if status is None and isinstance(exc.__cause__, ApiException):
            status = exc.__cause__.status
        return status

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List-then-watch Functions until shutdown.

        1. Retries the initial list with exponential backoff and jitter
           (capped at 30 s), then delivers every existing Function as added.
        2. Opens a streaming watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists and diffs against what was already
           delivered, so no change is lost or repeated.
        4. On other errors backs off with jitter and reconnects.

        ``401`` / ``403`` responses are configuration errors (RBAC/auth) and
        end the loop immediately instead of retrying forever.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.finished.clear()
        try:
            self._run(stop)
        finally:
            self.ready.clear()
            self.finished.set()

    def _run(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._relist()
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                break
            except Exception as exc:
                if self._access_denied(self._api_status(exc), "initial list"):
                    return
                self.logger.exception("Initial Function list failed")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.client.list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self.client.resource_kwargs(self.namespace),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break
                    seen_version = self._handle_event(event)
                    if seen_version:
                        resource_version = seen_version

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the watch history was compacted past our
                # resourceVersion, only a fresh list can resume it.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        resource_version = self._relist()
                    except Exception as relist_exc:
                        if self._access_denied(self._api_status(relist_exc), "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if self._access_denied(exc.status, "watch"):
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
