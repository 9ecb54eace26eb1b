from __future__ import annotations

import enum
import logging

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

from exposer.src.objects import ExposureSpec, RoutingSpec, Workload

LOGGER = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0


class Outcome(enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    DELETED = "deleted"
    NOT_FOUND = "not_found"


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    The kubeconfig file (explicit path, or the client's default location when
    *kubeconfig* is ``None``) is tried first; if it is missing or unusable
    the in-cluster service account configuration is used instead.
    """
    try:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig %s", kubeconfig or "from default location")
    except (ConfigException, FileNotFoundError) as exc:
        LOGGER.warning("Could not load kubeconfig (%s); trying in-cluster configuration", exc)
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, NetworkingV1Api]:
    """Return CoreV1, AppsV1 and NetworkingV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.NetworkingV1Api()


class ClusterGateway:
    """Thin, thread-safe facade over the Kubernetes API used by the reconciler.

    Translates the expected ``404``/``409`` responses into :class:`Outcome`
    values and lets every other :class:`ApiException` (or transport error)
    propagate.  Every call carries ``_request_timeout`` so a stalled API
    server cannot pin a worker forever.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        networking_api: NetworkingV1Api,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.networking_api = networking_api
        self.request_timeout = request_timeout

    def get_workload(self, namespace: str, name: str) -> Workload | None:
        try:
            deployment = self.apps_api.read_namespaced_deployment(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return Workload.from_deployment(deployment)

    def create_exposure(self, spec: ExposureSpec) -> Outcome:
        try:
            self.core_api.create_namespaced_service(
                namespace=spec.namespace,
                body=spec.to_service(),
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 409:
                return Outcome.ALREADY_EXISTS
            raise
        return Outcome.CREATED

    def delete_exposure(self, namespace: str, name: str) -> Outcome:
        try:
            self.core_api.delete_namespaced_service(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                return Outcome.NOT_FOUND
            raise
        return Outcome.DELETED

    def create_routing(self, spec: RoutingSpec) -> Outcome:
        try:
            self.networking_api.create_namespaced_ingress(
                namespace=spec.namespace,
                body=spec.to_ingress(),
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 409:
                return Outcome.ALREADY_EXISTS
            raise
        return Outcome.CREATED

    def delete_routing(self, namespace: str, name: str) -> Outcome:
        try:
            self.networking_api.delete_namespaced_ingress(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if exc.status == 404:
                return Outcome.NOT_FOUND
            raise
        return Outcome.DELETED
