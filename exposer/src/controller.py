from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass

from kubernetes.client import AppsV1Api, CoreV1Api, NetworkingV1Api

from exposer.src.informer import WorkloadInformer
from exposer.src.kube import ClusterGateway
from exposer.src.metrics import METRICS
from exposer.src.objects import Workload, WorkloadKeyError, key_for_object, split_workload_key
from exposer.src.reconciler import Reconciler
from exposer.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

QUEUE_NAME = "expose-queue"
WORKER_JOIN_TIMEOUT_SECONDS = 30.0


class CacheSyncError(RuntimeError):
    """Raised when the deployment cache does not sync within the start-up deadline."""


class InformerStoppedError(RuntimeError):
    """Raised when the informer exits without a shutdown request."""


@dataclass(frozen=True)
class ControllerContext:
    """Everything a worker needs, passed explicitly instead of living on globals."""

    queue: RateLimitingQueue
    reconciler: Reconciler
    logger: logging.Logger
    max_retries: int = 0


def process_next_item(context: ControllerContext) -> bool:
    """Take one key off the queue and reconcile it.

    Returns ``False`` once the queue is shutting down, ``True`` otherwise.
    Successful keys are forgotten; failed keys are re-added through the rate
    limiter.  Undecodable keys are dropped since retrying cannot fix them.
    """
    key, shutdown = context.queue.get()
    if shutdown:
        return False
    if key is None:
        return True

    try:
        try:
            identity = split_workload_key(key)
        except WorkloadKeyError as exc:
            context.logger.error(
                "Dropping undecodable key %r: %s",
                key,
                exc,
                extra={"workload": key, "event": "key_dropped"},
            )
            context.queue.forget(key)
            METRICS.dropped_keys_total.labels(reason="decode_error").inc()
            return True

        started = time.monotonic()
        try:
            result = context.reconciler.reconcile(identity)
            succeeded = result.succeeded
        except Exception:
            context.logger.exception(
                "Unexpected error reconciling %s",
                key,
                extra={"workload": key, "event": "reconcile_failed"},
            )
            succeeded = False
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        if succeeded:
            context.queue.forget(key)
            METRICS.reconcile_total.labels(result="success").inc()
            context.logger.info(
                "Reconciled %s",
                key,
                extra={"workload": key, "event": "reconcile_succeeded"},
            )
            return True

        METRICS.reconcile_total.labels(result="error").inc()
        requeues = context.queue.num_requeues(key)
        if context.max_retries and requeues >= context.max_retries:
            context.queue.forget(key)
            METRICS.dropped_keys_total.labels(reason="max_retries").inc()
            context.logger.error(
                "Giving up on %s after %d retries",
                key,
                requeues,
                extra={"workload": key, "event": "key_dropped"},
            )
            return True

        context.logger.warning(
            "Reconciliation of %s failed; requeueing (retry %d)",
            key,
            requeues + 1,
            extra={"workload": key, "event": "reconcile_failed"},
        )
        context.queue.add_rate_limited(key)
        return True
    finally:
        context.queue.done(key)


def run_worker(context: ControllerContext) -> None:
    """Process keys until the queue shuts down."""
    while process_next_item(context):
        pass


class ExposeController:
    """Keeps a Service and an Ingress alongside every Deployment.

    Informer callbacks only enqueue ``namespace/name`` keys; add and delete
    notifications are indistinguishable on the queue because the reconciler
    re-checks the Deployment against the API server anyway.

    :meth:`run` refuses to start workers until the informer cache has
    synced, and raises :class:`CacheSyncError` if that does not happen within
    ``cache_sync_timeout_seconds``.
    """

    def __init__(
        self,
        informer: WorkloadInformer,
        reconciler: Reconciler,
        queue: RateLimitingQueue | None = None,
        workers: int = 1,
        cache_sync_timeout_seconds: float = 60.0,
        max_retries: int = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.informer = informer
        self.reconciler = reconciler
        self.queue = queue if queue is not None else RateLimitingQueue(name=QUEUE_NAME)
        self.workers = workers
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.max_retries = max_retries
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

        self.informer.add_event_handler(on_add=self.handle_add, on_delete=self.handle_delete)

    def enqueue(self, obj: Workload | object) -> None:
        try:
            key = key_for_object(obj)
        except WorkloadKeyError:
            self.logger.exception("Cannot derive queue key for notified object")
            return
        self.queue.add(key)

    def handle_add(self, workload: Workload) -> None:
        self.logger.debug(
            "Deployment %s added (uid=%s, resourceVersion=%s)",
            workload.identity,
            workload.uid,
            workload.resource_version,
            extra={"workload": str(workload.identity), "event": "workload_added"},
        )
        self.enqueue(workload.identity)

    def handle_delete(self, workload: Workload) -> None:
        self.logger.debug(
            "Deployment %s deleted (uid=%s, resourceVersion=%s)",
            workload.identity,
            workload.uid,
            workload.resource_version,
            extra={"workload": str(workload.identity), "event": "workload_removed"},
        )
        self.enqueue(workload.identity)

    def context(self) -> ControllerContext:
        return ControllerContext(
            queue=self.queue,
            reconciler=self.reconciler,
            logger=self.logger,
            max_retries=self.max_retries,
        )

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the informer and workers and block until *shutdown_event* is set.

        An informer that exits on its own (e.g. RBAC denial) also triggers
        shutdown, so workers never keep reconciling from a frozen cache.
        """
        stop = shutdown_event or threading.Event()
        self.logger.info("Starting controller with %d worker(s)", self.workers)

        informer_failed = threading.Event()
        stopping = threading.Event()

        def _run_informer() -> None:
            try:
                self.informer.run(stop_event=stop)
            except Exception:
                self.logger.exception("Informer thread crashed")
            finally:
                if not stop.is_set() and not stopping.is_set():
                    self.logger.error("Informer stopped without a shutdown request; shutting down")
                    informer_failed.set()
                    stop.set()

        informer_thread = threading.Thread(target=_run_informer, name="informer", daemon=True)
        informer_thread.start()
        worker_threads: list[threading.Thread] = []

        try:
            if not self.informer.wait_for_sync(self.cache_sync_timeout_seconds, stop_event=stop):
                if stop.is_set() and not informer_failed.is_set():
                    self.logger.info("Shutdown requested before the deployment cache synced")
                    return
                raise CacheSyncError(
                    "Deployment cache did not sync within "
                    f"{self.cache_sync_timeout_seconds:g}s; refusing to reconcile"
                )

            context = self.context()
            for index in range(self.workers):
                thread = threading.Thread(
                    target=run_worker,
                    args=(context,),
                    name=f"worker-{index}",
                    daemon=True,
                )
                thread.start()
                worker_threads.append(thread)

            self.ready.set()
            self.logger.info("Controller ready")
            stop.wait()
            if informer_failed.is_set():
                raise InformerStoppedError("Deployment informer stopped unexpectedly")
        finally:
            stopping.set()
            self.ready.clear()
            self.logger.info("Shutting down controller")
            self.queue.shut_down()
            self.informer.request_stop()
            for thread in worker_threads:
                thread.join(timeout=WORKER_JOIN_TIMEOUT_SECONDS)
                if thread.is_alive():
                    self.logger.error("Worker %s did not stop in time", thread.name)
            informer_thread.join(timeout=WORKER_JOIN_TIMEOUT_SECONDS)


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
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_bool(name: str, default: bool = False) -> bool:
    """Read a boolean environment variable; ``1``, ``true``, ``yes`` and ``on`` are true."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def build_controller_from_env(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    networking_api: NetworkingV1Api,
) -> ExposeController:
    """Construct an :class:`ExposeController` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``             : Namespace to watch; empty watches all (``""``).
        ``WORKERS``                     : Reconcile worker threads (``1``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``  : Start-up cache sync deadline (``60``).
        ``API_TIMEOUT_SECONDS``         : Deadline for each API call (``10``).
        ``MAX_RETRIES``                 : Retries before a key is dropped; 0 retries forever (``0``).
        ``RETRY_BASE_DELAY_MS``         : First retry delay (``5``).
        ``RETRY_MAX_DELAY_SECONDS``     : Retry delay cap (``1000``).
        ``ALREADY_EXISTS_IS_CONVERGED`` : Treat create conflicts as success (``false``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip()
    workers = env_int("WORKERS", 1, minimum=1)
    cache_sync_timeout = env_int("CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1)
    api_timeout = env_int("API_TIMEOUT_SECONDS", 10, minimum=1)
    max_retries = env_int("MAX_RETRIES", 0, minimum=0)
    base_delay_ms = env_int("RETRY_BASE_DELAY_MS", 5, minimum=1)
    max_delay_seconds = env_int("RETRY_MAX_DELAY_SECONDS", 1000, minimum=1)
    if max_delay_seconds * 1000 < base_delay_ms:
        raise ValueError("RETRY_MAX_DELAY_SECONDS must not be smaller than RETRY_BASE_DELAY_MS")
    already_exists_is_converged = env_bool("ALREADY_EXISTS_IS_CONVERGED", default=False)

    gateway = ClusterGateway(
        core_api=core_api,
        apps_api=apps_api,
        networking_api=networking_api,
        request_timeout=float(api_timeout),
    )
    informer = WorkloadInformer(
        apps_api=apps_api,
        namespace=namespace or None,
        request_timeout=float(api_timeout),
    )
    reconciler = Reconciler(
        gateway=gateway,
        cache=informer,
        already_exists_is_converged=already_exists_is_converged,
    )
    queue = RateLimitingQueue(
        rate_limiter=default_controller_rate_limiter(
            base_delay=base_delay_ms / 1000.0,
            max_delay=float(max_delay_seconds),
        ),
        name=QUEUE_NAME,
    )
    return ExposeController(
        informer=informer,
        reconciler=reconciler,
        queue=queue,
        workers=workers,
        cache_sync_timeout_seconds=float(cache_sync_timeout),
        max_retries=max_retries,
    )
