from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from kubernetes.client import ApiException

from exposer.src.kube import Outcome
from exposer.src.metrics import METRICS
from exposer.src.objects import (
    ExposureSpec,
    RoutingSpec,
    Workload,
    WorkloadIdentity,
    desired_exposure,
    desired_routing,
    exposure_name,
    routing_name,
)

SERVICE_KIND = "service"
INGRESS_KIND = "ingress"


class Gateway(Protocol):
    def get_workload(self, namespace: str, name: str) -> Workload | None: ...

    def create_exposure(self, spec: ExposureSpec) -> Outcome: ...

    def delete_exposure(self, namespace: str, name: str) -> Outcome: ...

    def create_routing(self, spec: RoutingSpec) -> Outcome: ...

    def delete_routing(self, namespace: str, name: str) -> Outcome: ...


class WorkloadCache(Protocol):
    def get(self, namespace: str, name: str) -> Workload | None: ...


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation attempt for a single workload.

    ``workload_present`` is ``None`` when the authoritative lookup itself
    failed.  ``conflicts`` lists derived objects whose create call found the
    object already present.
    """

    identity: WorkloadIdentity
    workload_present: bool | None
    created: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()
    failed: int = 0
    conflicts_are_failures: bool = True

    @property
    def succeeded(self) -> bool:
        if self.failed:
            return False
        return not (self.conflicts and self.conflicts_are_failures)


class Reconciler:
    """Converge the Service and Ingress of one Deployment towards its existence.

    Nothing is remembered between calls: every invocation re-reads the
    Deployment from the API server and derives the desired objects from it.

    * Deployment absent: delete ``<name>-service`` and
      ``<name>-service-ingress``.  Both deletes are always attempted and a
      404 counts as success, so cleanup can be repeated any number of times.
    * Deployment present: create the Service selecting the pod template
      labels, then the Ingress routing ``/<name>-service`` to it on port 80.
      Creates are issued without a prior read; a 409 is recorded as a
      conflict.  Conflicts fail the attempt (so the key is retried) unless
      ``already_exists_is_converged`` is set.

    API failures are caught, logged and counted in the result; the caller
    decides whether to retry.
    """

    def __init__(
        self,
        gateway: Gateway,
        cache: WorkloadCache | None = None,
        logger: logging.Logger | None = None,
        already_exists_is_converged: bool = False,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)
        self.already_exists_is_converged = already_exists_is_converged

    def _log_extra(self, identity: WorkloadIdentity, event: str, **fields: str) -> dict[str, str]:
        return {"workload": str(identity), "event": event, **fields}

    def _compare_with_cache(self, identity: WorkloadIdentity, present: bool) -> None:
        """Log at debug level when the informer cache disagrees with the API server."""
        if self.cache is None:
            return
        cached = self.cache.get(identity.namespace, identity.name)
        if (cached is not None) != present:
            self.logger.debug(
                "Cache disagrees with API server for %s (cached=%s, present=%s)",
                identity,
                cached is not None,
                present,
            )

    def reconcile(self, identity: WorkloadIdentity) -> ReconcileResult:
        try:
            workload = self.gateway.get_workload(identity.namespace, identity.name)
        except ApiException as exc:
            self.logger.error(
                "Failed to read deployment %s: %s %s",
                identity,
                exc.status,
                exc.reason,
                extra=self._log_extra(identity, "lookup_failed"),
            )
            return self._result(identity, workload_present=None, failed=1)
        except Exception:
            self.logger.exception(
                "Failed to read deployment %s",
                identity,
                extra=self._log_extra(identity, "lookup_failed"),
            )
            return self._result(identity, workload_present=None, failed=1)

        self._compare_with_cache(identity, present=workload is not None)

        if workload is None:
            return self._cleanup(identity)
        return self._converge(identity, workload)

    def _result(
        self,
        identity: WorkloadIdentity,
        workload_present: bool | None,
        created: list[str] | None = None,
        deleted: list[str] | None = None,
        conflicts: list[str] | None = None,
        failed: int = 0,
    ) -> ReconcileResult:
        return ReconcileResult(
            identity=identity,
            workload_present=workload_present,
            created=tuple(created or ()),
            deleted=tuple(deleted or ()),
            conflicts=tuple(conflicts or ()),
            failed=failed,
            conflicts_are_failures=not self.already_exists_is_converged,
        )

    def _cleanup(self, identity: WorkloadIdentity) -> ReconcileResult:
        service_name = exposure_name(identity.name)
        ingress_name = routing_name(service_name)
        self.logger.info(
            "Deployment %s no longer exists; removing derived objects",
            identity,
            extra=self._log_extra(identity, "workload_deleted"),
        )

        deleted: list[str] = []
        failed = 0
        for kind, name, delete in (
            (INGRESS_KIND, ingress_name, self.gateway.delete_routing),
            (SERVICE_KIND, service_name, self.gateway.delete_exposure),
        ):
            try:
                outcome = delete(identity.namespace, name)
            except Exception as exc:
                failed += 1
                self.logger.error(
                    "Failed to delete %s %s/%s: %s",
                    kind,
                    identity.namespace,
                    name,
                    _describe(exc),
                    extra=self._log_extra(identity, "delete_failed", kind=kind, object=name),
                )
                continue

            if outcome is Outcome.DELETED:
                deleted.append(name)
                METRICS.objects_deleted_total.labels(kind=kind).inc()
                self.logger.info(
                    "Deleted %s %s/%s",
                    kind,
                    identity.namespace,
                    name,
                    extra=self._log_extra(identity, "object_deleted", kind=kind, object=name),
                )
            else:
                self.logger.info(
                    "%s %s/%s already absent",
                    kind.capitalize(),
                    identity.namespace,
                    name,
                    extra=self._log_extra(identity, "object_absent", kind=kind, object=name),
                )

        return self._result(identity, workload_present=False, deleted=deleted, failed=failed)

    def _converge(self, identity: WorkloadIdentity, workload: Workload) -> ReconcileResult:
        exposure = desired_exposure(workload)
        if not exposure.selector:
            self.logger.warning(
                "Deployment %s has no pod template labels; service %s will select no pods",
                identity,
                exposure.name,
                extra=self._log_extra(identity, "empty_selector", kind=SERVICE_KIND),
            )

        created: list[str] = []
        conflicts: list[str] = []

        outcome = self._create(
            identity=identity,
            kind=SERVICE_KIND,
            name=exposure.name,
            create=lambda: self.gateway.create_exposure(exposure),
        )
        if outcome is None:
            # The Ingress is only worth creating once its Service is known to exist.
            return self._result(identity, workload_present=True, failed=1)
        (created if outcome is Outcome.CREATED else conflicts).append(exposure.name)

        routing = desired_routing(exposure)
        outcome = self._create(
            identity=identity,
            kind=INGRESS_KIND,
            name=routing.name,
            create=lambda: self.gateway.create_routing(routing),
        )
        if outcome is not None:
            (created if outcome is Outcome.CREATED else conflicts).append(routing.name)

        return self._result(
            identity,
            workload_present=True,
            created=created,
            conflicts=conflicts,
            failed=0 if outcome is not None else 1,
        )

    def _create(
        self,
        identity: WorkloadIdentity,
        kind: str,
        name: str,
        create: Callable[[], Outcome],
    ) -> Outcome | None:
        """Issue one create call; return ``None`` when it failed outright."""
        try:
            outcome = create()
        except Exception as exc:
            self.logger.error(
                "Failed to create %s %s/%s: %s",
                kind,
                identity.namespace,
                name,
                _describe(exc),
                extra=self._log_extra(identity, "create_failed", kind=kind, object=name),
            )
            return None

        if outcome is Outcome.ALREADY_EXISTS:
            METRICS.conflicts_total.labels(kind=kind).inc()
            self.logger.info(
                "%s %s/%s already exists",
                kind.capitalize(),
                identity.namespace,
                name,
                extra=self._log_extra(identity, "object_exists", kind=kind, object=name),
            )
            return outcome

        METRICS.objects_created_total.labels(kind=kind).inc()
        self.logger.info(
            "Created %s %s/%s",
            kind,
            identity.namespace,
            name,
            extra=self._log_extra(identity, "object_created", kind=kind, object=name),
        )
        return outcome


def _describe(exc: Exception) -> str:
    if isinstance(exc, ApiException):
        return f"{exc.status} {exc.reason}"
    return f"{type(exc).__name__}: {exc}"
