from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import (
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1ObjectMeta,
    V1Service,
    V1ServiceBackendPort,
    V1ServicePort,
    V1ServiceSpec,
)

EXPOSURE_SUFFIX = "-service"
ROUTING_SUFFIX = "-ingress"
EXPOSURE_PORT = 80
EXPOSURE_PORT_NAME = "http"
ROUTING_PATH_TYPE = "Prefix"
KEY_SEPARATOR = "/"


class WorkloadKeyError(ValueError):
    """Raised when a queue key cannot be decoded into a workload identity."""


@dataclass(frozen=True)
class WorkloadIdentity:
    """``namespace/name`` of a Deployment; ``str()`` gives its queue key."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return workload_key(self.namespace, self.name)


@dataclass(frozen=True)
class Workload:
    """Read-only projection of a Deployment.

    Only the fields the reconciler needs are kept.  ``pod_labels`` are the
    pod template labels and become the Service selector verbatim.
    """

    namespace: str
    name: str
    pod_labels: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None
    uid: str | None = None

    @property
    def identity(self) -> WorkloadIdentity:
        return WorkloadIdentity(namespace=self.namespace, name=self.name)

    @classmethod
    def from_deployment(cls, deployment: Any) -> Workload:
        """Build a :class:`Workload` from a ``V1Deployment`` (or a look-alike).

        Missing ``spec.template.metadata.labels`` yields an empty label set.
        """
        metadata = getattr(deployment, "metadata", None)
        namespace = getattr(metadata, "namespace", None) or ""
        name = getattr(metadata, "name", None) or ""
        spec = getattr(deployment, "spec", None)
        template = getattr(spec, "template", None)
        template_metadata = getattr(template, "metadata", None)
        labels = getattr(template_metadata, "labels", None)
        if not isinstance(labels, dict):
            labels = {}
        return cls(
            namespace=namespace,
            name=name,
            pod_labels={str(k): str(v) for k, v in labels.items()},
            resource_version=getattr(metadata, "resource_version", None),
            uid=getattr(metadata, "uid", None),
        )


@dataclass(frozen=True)
class ExposureSpec:
    """Desired Service fronting a workload's pods."""

    namespace: str
    name: str
    selector: dict[str, str]
    port: int = EXPOSURE_PORT
    port_name: str = EXPOSURE_PORT_NAME

    def to_service(self) -> V1Service:
        return V1Service(
            api_version="v1",
            kind="Service",
            metadata=V1ObjectMeta(name=self.name, namespace=self.namespace),
            spec=V1ServiceSpec(
                selector=dict(self.selector),
                ports=[V1ServicePort(name=self.port_name, port=self.port)],
            ),
        )


@dataclass(frozen=True)
class RoutingSpec:
    """Desired Ingress routing ``/<service>`` to the exposure Service."""

    namespace: str
    name: str
    path: str
    service_name: str
    service_port: int = EXPOSURE_PORT
    path_type: str = ROUTING_PATH_TYPE

    def to_ingress(self) -> V1Ingress:
        backend = V1IngressBackend(
            service=V1IngressServiceBackend(
                name=self.service_name,
                port=V1ServiceBackendPort(number=self.service_port),
            )
        )
        return V1Ingress(
            api_version="networking.k8s.io/v1",
            kind="Ingress",
            metadata=V1ObjectMeta(name=self.name, namespace=self.namespace),
            spec=V1IngressSpec(
                rules=[
                    V1IngressRule(
                        http=V1HTTPIngressRuleValue(
                            paths=[
                                V1HTTPIngressPath(
                                    path=self.path,
                                    path_type=self.path_type,
                                    backend=backend,
                                )
                            ]
                        )
                    )
                ]
            ),
        )


def exposure_name(workload_name: str) -> str:
    """Name of the Service fronting *workload_name*: ``<name>-service``."""
    return f"{workload_name}{EXPOSURE_SUFFIX}"


def routing_name(exposure: str) -> str:
    """Name of the Ingress routing to the Service *exposure*: ``<service>-ingress``."""
    return f"{exposure}{ROUTING_SUFFIX}"


def workload_key(namespace: str, name: str) -> str:
    """Encode a workload identity as its ``namespace/name`` queue key."""
    return f"{namespace}{KEY_SEPARATOR}{name}"


def key_for_object(obj: Any) -> str:
    """Return the ``namespace/name`` queue key for a Kubernetes object, :class:`Workload` or identity."""
    if isinstance(obj, (Workload, WorkloadIdentity)):
        return workload_key(obj.namespace, obj.name)
    if isinstance(obj, str):
        return obj
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    name = getattr(metadata, "name", None)
    if not namespace or not name:
        raise WorkloadKeyError(f"object has no namespace/name metadata: {obj!r}")
    return workload_key(namespace, name)


def split_workload_key(key: str) -> WorkloadIdentity:
    """Decode ``namespace/name`` into a :class:`WorkloadIdentity`.

    Deployments are namespaced, so a key without a namespace, with an empty
    part, or with more than one separator is rejected.
    """
    if not isinstance(key, str):
        raise WorkloadKeyError(f"queue key must be a string, got: {type(key).__name__}")
    parts = key.split(KEY_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise WorkloadKeyError(f"unexpected key format: {key!r}")
    return WorkloadIdentity(namespace=parts[0], name=parts[1])


def desired_exposure(workload: Workload) -> ExposureSpec:
    """Derive the Service for *workload*, selecting its pod template labels verbatim."""
    return ExposureSpec(
        namespace=workload.namespace,
        name=exposure_name(workload.name),
        selector=dict(workload.pod_labels),
    )


def desired_routing(exposure: ExposureSpec) -> RoutingSpec:
    """Derive the Ingress for *exposure*: one rule, prefix path ``/<service>``."""
    return RoutingSpec(
        namespace=exposure.namespace,
        name=routing_name(exposure.name),
        path=f"/{exposure.name}",
        service_name=exposure.name,
        service_port=exposure.port,
    )
