from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api

from exposer.src.metrics import METRICS
from exposer.src.objects import Workload, workload_key

Handler = Callable[[Workload], None]

WATCH_TIMEOUT_SECONDS = 300
MAX_BACKOFF_SECONDS = 30
SYNC_POLL_SECONDS = 0.1


class WorkloadInformer:
    """Eventually consistent local mirror of Deployments with change callbacks.

    Lists Deployments once, then streams watch events from the list's
    ``resourceVersion``.  The initial list and every watch ``ADDED`` event are
    delivered to the ``on_add`` handlers, ``DELETED`` events to ``on_delete``;
    ``MODIFIED`` events only refresh the cache.  When the watch expires with
    ``410 Gone`` the informer re-lists and replays the difference against the
    cache as synthetic add/delete notifications, so no deletion observed
    while disconnected is lost.

    ``401``/``403`` responses are treated as configuration errors (RBAC or
    credentials) and end :meth:`run` instead of retrying forever.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
        request_timeout: float | None = None,
        watch_timeout_seconds: int = WATCH_TIMEOUT_SECONDS,
    ) -> None:
        self.apps_api = apps_api
        self.namespace = namespace or None
        self.logger = logger or logging.getLogger(__name__)
        self.request_timeout = request_timeout
        self.watch_timeout_seconds = watch_timeout_seconds

        self._store: dict[str, Workload] = {}
        self._store_lock = threading.Lock()
        self._add_handlers: list[Handler] = []
        self._delete_handlers: list[Handler] = []
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: Handler | None = None,
        on_delete: Handler | None = None,
    ) -> None:
        if on_add is not None:
            self._add_handlers.append(on_add)
        if on_delete is not None:
            self._delete_handlers.append(on_delete)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_sync(self, timeout: float, stop_event: threading.Event | None = None) -> bool:
        """Block until the initial list has been applied, *timeout* expires, or *stop_event* fires.

        Returns ``True`` only when the cache actually synced.
        """
        stop = stop_event or threading.Event()
        deadline = time.monotonic() + timeout
        while not stop.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if self._synced.wait(timeout=min(SYNC_POLL_SECONDS, remaining)):
                return True
        return self._synced.is_set()

    def get(self, namespace: str, name: str) -> Workload | None:
        with self._store_lock:
            return self._store.get(workload_key(namespace, name))

    def keys(self) -> list[str]:
        with self._store_lock:
            return sorted(self._store)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.namespace is not None:
            kwargs["namespace"] = self.namespace
        return kwargs

    def _list_func(self) -> Callable[..., Any]:
        if self.namespace is not None:
            return self.apps_api.list_namespaced_deployment
        return self.apps_api.list_deployment_for_all_namespaces

    def _list(self) -> Any:
        kwargs = self._list_kwargs()
        if self.request_timeout is not None:
            kwargs["_request_timeout"] = self.request_timeout
        return self._list_func()(**kwargs)

    def _notify(self, handlers: list[Handler], workload: Workload) -> None:
        for handler in handlers:
            try:
                handler(workload)
            except Exception:
                self.logger.exception(
                    "Event handler failed for deployment %s/%s",
                    workload.namespace,
                    workload.name,
                )

    def _replace(self, deployments: Any) -> None:
        """Replace the cache with a full listing and notify about the difference.

        On the first call every listed object is reported as added.  On a
        re-list, objects not seen before are reported as added and cached
        objects missing from the listing as deleted.
        """
        items = getattr(deployments, "items", None) or []
        fresh: dict[str, Workload] = {}
        for deployment in items:
            workload = Workload.from_deployment(deployment)
            if not workload.namespace or not workload.name:
                self.logger.warning("Skipping deployment without namespace/name metadata")
                continue
            fresh[workload_key(workload.namespace, workload.name)] = workload

        with self._store_lock:
            previous = self._store
            self._store = fresh

        added = [workload for key, workload in fresh.items() if key not in previous]
        removed = [workload for key, workload in previous.items() if key not in fresh]
        for workload in added:
            self._notify(self._add_handlers, workload)
        for workload in removed:
            self.logger.info(
                "Deployment %s/%s disappeared while the watch was disconnected",
                workload.namespace,
                workload.name,
            )
            self._notify(self._delete_handlers, workload)

    def handle_event(self, event_type: str, deployment: Any) -> None:
        """Apply one watch event to the cache and notify handlers."""
        workload = Workload.from_deployment(deployment)
        if not workload.namespace or not workload.name:
            return
        key = workload_key(workload.namespace, workload.name)

        if event_type == "DELETED":
            with self._store_lock:
                cached = self._store.pop(key, None)
            self._notify(self._delete_handlers, cached or workload)
            return

        if event_type not in {"ADDED", "MODIFIED"}:
            return

        with self._store_lock:
            known = key in self._store
            self._store[key] = workload
        # A MODIFIED event for an unknown key means the ADDED was missed.
        if event_type == "ADDED" or not known:
            self._notify(self._add_handlers, workload)

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            exc.status,
        )
        return True

    def _back_off(self, stop: threading.Event, backoff_seconds: int) -> int:
        """Sleep a jittered *backoff_seconds* (interruptible by *stop*) and return the next backoff."""
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List-then-watch Deployments until stopped.

        1. Lists Deployments, seeds or diffs the cache against the listing and
           marks the informer synced after the first successful list.
        2. Watches from the list's ``resourceVersion``, reconnecting when the
           server closes the stream.
        3. On ``410 Gone`` goes back to step 1.  A failed list is retried with
           backoff; the watch is never reopened without a fresh listing, so
           deletions that happened while disconnected are always replayed.
        4. On other errors backs off (1 s doubling to 30 s, with jitter).
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        needs_list = True
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if needs_list:
                phase = "deployment re-list" if self.has_synced() else "initial deployment list"
                try:
                    listing = self._list()
                    resource_version = getattr(
                        getattr(listing, "metadata", None), "resource_version", None
                    )
                    self._replace(listing)
                    needs_list = False
                except ApiException as exc:
                    if self._access_denied(exc, phase):
                        return
                    self.logger.exception("Kubernetes %s failed", phase)
                    METRICS.watch_errors_total.inc()
                except Exception:
                    self.logger.exception("Unexpected error during %s", phase)
                    METRICS.watch_errors_total.inc()

                if needs_list:
                    backoff_seconds = self._back_off(stop, backoff_seconds)
                    continue

                backoff_seconds = 1
                if not self.has_synced():
                    self._synced.set()
                    self.logger.info(
                        "Deployment cache synced with %d object(s); watching from resourceVersion %s",
                        len(self.keys()),
                        resource_version,
                    )
                else:
                    self.logger.info("Re-listed deployments at resourceVersion %s", resource_version)
                continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_func(),
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._list_kwargs(),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_event(event_type=str(event.get("type", "")), deployment=obj)

                backoff_seconds = 1
            except ApiException as exc:
                # The server compacted past our resourceVersion; only a fresh
                # list can tell us what changed in between.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    needs_list = True
                    continue

                if self._access_denied(exc, "deployment watch"):
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._back_off(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                backoff_seconds = self._back_off(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
