"""Thin boundary over the official Kubernetes client.

Everything the orchestrator, cleanup manager and sidecar need from the
cluster goes through ``ClusterClient``. The rest of the package only sees
the plain views from ``k6runner.models``; tests substitute an in-memory
fake with the same methods.
"""

import re
from typing import Dict, Iterator, List, Optional

import structlog
import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from k6runner.errors import ClusterStateError, MetricsUnavailableError
from k6runner.models import (
    COMPLETE,
    FAILED,
    DeploymentInfo,
    JobInfo,
    NodeInfo,
    PodInfo,
    ResourceSample,
)

logger = structlog.get_logger(__name__)

METRICS_GROUP = "metrics.k8s.io"
METRICS_VERSION = "v1beta1"

# Connection-level failures; the client raises these instead of ApiException
TRANSPORT_ERRORS = (urllib3.exceptions.HTTPError, OSError)


def load_cluster_client() -> "ClusterClient":
    """Build a ClusterClient from in-cluster config, falling back to kubeconfig."""
    try:
        config.load_incluster_config()
        logger.debug("Using in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Using default kubeconfig file")
        except config.ConfigException as exc:
            raise ClusterStateError(f"failed to load Kubernetes configuration: {exc}") from exc
    return ClusterClient(client.ApiClient())


def job_state(status: Optional[client.V1JobStatus]) -> Optional[str]:
    """Return Complete/Failed for a finished job, None while it is running."""
    if status is None or not status.conditions:
        return None
    for condition in status.conditions:
        if condition.status != "True":
            continue
        if condition.type == COMPLETE:
            return COMPLETE
        if condition.type == FAILED:
            return FAILED
    return None


def parse_cpu(quantity: str) -> float:
    """Convert a CPU quantity ("250m", "12345678n", "2") to millicores."""
    q = str(quantity).strip()
    if q.endswith("n"):
        return float(q[:-1]) / 1_000_000
    if q.endswith("u"):
        return float(q[:-1]) / 1_000
    if q.endswith("m"):
        return float(q[:-1])
    return float(q) * 1000


_MEMORY_UNITS = {
    "Ki": 1024, "Mi": 1024 ** 2, "Gi": 1024 ** 3, "Ti": 1024 ** 4,
    "K": 1000, "k": 1000, "M": 1000 ** 2, "G": 1000 ** 3, "T": 1000 ** 4,
}


def parse_memory(quantity: str) -> float:
    """Convert a memory quantity ("512Mi", "1048576Ki", "1G") to MiB."""
    match = re.fullmatch(r"([0-9.]+)([A-Za-z]*)", str(quantity).strip())
    if not match:
        raise ValueError(f"invalid memory quantity: {quantity!r}")
    number, unit = match.groups()
    if unit and unit not in _MEMORY_UNITS:
        raise ValueError(f"unknown memory unit in {quantity!r}")
    return float(number) * _MEMORY_UNITS.get(unit, 1) / 1024 ** 2


def selector_from(labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class ClusterClient:
    """Job, pod, config map and metrics operations against one API server."""

    def __init__(self, api_client: client.ApiClient):
        self.batch = client.BatchV1Api(api_client)
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.rbac = client.RbacAuthorizationV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    # -- jobs -----------------------------------------------------------------

    def job_exists(self, name: str, namespace: str) -> bool:
        try:
            self.batch.read_namespaced_job(name=name, namespace=namespace)
            return True
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise _cluster_error(f"reading job {name}", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"reading job {name}", exc) from exc

    def create_job(self, namespace: str, body: client.V1Job) -> None:
        try:
            self.batch.create_namespaced_job(namespace=namespace, body=body)
        except ApiException as exc:
            raise _cluster_error(f"creating job {body.metadata.name}", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"creating job {body.metadata.name}", exc) from exc

    def delete_job(self, name: str, namespace: str) -> None:
        try:
            self.batch.delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Foreground"),
            )
        except ApiException as exc:
            if exc.status != 404:
                raise _cluster_error(f"deleting job {name}", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"deleting job {name}", exc) from exc

    def job_state(self, name: str, namespace: str) -> Optional[str]:
        try:
            job = self.batch.read_namespaced_job_status(name=name, namespace=namespace)
        except ApiException as exc:
            raise _cluster_error(f"reading status of job {name}", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"reading status of job {name}", exc) from exc
        return job_state(job.status)

    def list_jobs(self, namespace: str, selector: str) -> List[JobInfo]:
        try:
            jobs = self.batch.list_namespaced_job(namespace=namespace, label_selector=selector)
        except ApiException as exc:
            raise _cluster_error("listing jobs", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error("listing jobs", exc) from exc
        out = []
        for job in jobs.items:
            state = job_state(job.status)
            if state is None:
                state = "Active" if job.status and job.status.active else "Unknown"
            out.append(JobInfo(
                name=job.metadata.name,
                state=state,
                created_at=job.metadata.creation_timestamp,
                labels=dict(job.metadata.labels or {}),
            ))
        return out

    # -- pods -----------------------------------------------------------------

    def list_pods(self, namespace: str, selector: str) -> List[PodInfo]:
        try:
            pods = self.core.list_namespaced_pod(namespace=namespace, label_selector=selector)
        except ApiException as exc:
            raise _cluster_error("listing pods", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error("listing pods", exc) from exc
        return [
            PodInfo(
                name=p.metadata.name,
                phase=(p.status.phase if p.status else None) or "Unknown",
                labels=dict(p.metadata.labels or {}),
            )
            for p in pods.items
        ]

    def stream_logs(self, pod: str, namespace: str, container: str) -> Iterator[str]:
        """Follow a container's output line by line until the stream closes."""
        w = watch.Watch()
        try:
            for line in w.stream(
                self.core.read_namespaced_pod_log,
                name=pod,
                namespace=namespace,
                container=container,
                follow=True,
            ):
                yield line
        except ApiException as exc:
            raise _cluster_error(f"streaming logs of pod {pod}", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"streaming logs of pod {pod}", exc) from exc
        finally:
            w.stop()

    # -- config maps ----------------------------------------------------------

    def read_configmap(self, name: str, namespace: str) -> Optional[Dict[str, str]]:
        try:
            cm = self.core.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise _cluster_error(f"reading config map {name}", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"reading config map {name}", exc) from exc
        return dict(cm.data or {})

    def apply_configmap(self, name: str, namespace: str, data: Dict[str, str],
                        labels: Optional[Dict[str, str]] = None) -> None:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
            data=data,
        )
        try:
            self.core.create_namespaced_config_map(namespace=namespace, body=body)
        except ApiException as exc:
            if exc.status != 409:
                raise _cluster_error(f"creating config map {name}", exc)
            try:
                self.core.replace_namespaced_config_map(name=name, namespace=namespace, body=body)
            except ApiException as exc2:
                raise _cluster_error(f"replacing config map {name}", exc2)
            except TRANSPORT_ERRORS as exc2:
                raise _transport_error(f"replacing config map {name}", exc2) from exc2
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"creating config map {name}", exc) from exc

    def list_configmaps(self, namespace: str, selector: Optional[str] = None) -> List[str]:
        try:
            cms = self.core.list_namespaced_config_map(
                namespace=namespace, label_selector=selector or ""
            )
        except ApiException as exc:
            raise _cluster_error("listing config maps", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error("listing config maps", exc) from exc
        return [cm.metadata.name for cm in cms.items]

    def delete_configmap(self, name: str, namespace: str) -> None:
        try:
            self.core.delete_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status != 404:
                raise _cluster_error(f"deleting config map {name}", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"deleting config map {name}", exc) from exc

    # -- rbac -----------------------------------------------------------------

    def delete_rbac(self, kind: str, name: str, namespace: str) -> None:
        """Delete a service account, role, role binding or cluster-scoped RBAC object."""
        calls = {
            "serviceaccount": lambda: self.core.delete_namespaced_service_account(name, namespace),
            "role": lambda: self.rbac.delete_namespaced_role(name, namespace),
            "rolebinding": lambda: self.rbac.delete_namespaced_role_binding(name, namespace),
            "clusterrole": lambda: self.rbac.delete_cluster_role(name),
            "clusterrolebinding": lambda: self.rbac.delete_cluster_role_binding(name),
        }
        if kind not in calls:
            raise ValueError(f"unsupported RBAC kind: {kind}")
        try:
            calls[kind]()
        except ApiException as exc:
            if exc.status != 404:
                raise _cluster_error(f"deleting {kind} {name}", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error(f"deleting {kind} {name}", exc) from exc

    # -- discovery and metrics -------------------------------------------------

    def list_deployments(self, namespace: str, selector: Optional[str] = None) -> List[DeploymentInfo]:
        try:
            deployments = self.apps.list_namespaced_deployment(
                namespace=namespace, label_selector=selector or ""
            )
        except ApiException as exc:
            raise _cluster_error("listing deployments", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error("listing deployments", exc) from exc
        return [
            DeploymentInfo(
                name=d.metadata.name,
                match_labels=dict((d.spec.selector.match_labels or {}) if d.spec.selector else {}),
            )
            for d in deployments.items
        ]

    def list_nodes(self, selector: Optional[str] = None) -> List[NodeInfo]:
        try:
            nodes = self.core.list_node(label_selector=selector or "")
        except ApiException as exc:
            raise _cluster_error("listing nodes", exc)
        except TRANSPORT_ERRORS as exc:
            raise _transport_error("listing nodes", exc) from exc
        return [NodeInfo(name=n.metadata.name, labels=dict(n.metadata.labels or {}))
                for n in nodes.items]

    def pod_usage(self, namespace: str, selector: str) -> List[ResourceSample]:
        """Current CPU/memory per pod from metrics.k8s.io, summed over containers."""
        try:
            raw = self.custom.list_namespaced_custom_object(
                METRICS_GROUP, METRICS_VERSION, namespace, "pods", label_selector=selector
            )
        except ApiException as exc:
            raise MetricsUnavailableError(f"pod metrics unavailable: {exc.reason}") from exc
        except TRANSPORT_ERRORS as exc:
            raise MetricsUnavailableError(f"pod metrics unavailable: {exc}") from exc
        samples = []
        try:
            for item in raw.get("items", []):
                cpu = sum(parse_cpu(c["usage"]["cpu"]) for c in item.get("containers", []))
                mem = sum(parse_memory(c["usage"]["memory"]) for c in item.get("containers", []))
                samples.append(ResourceSample(item["metadata"]["name"], cpu, mem))
        except (KeyError, TypeError, ValueError) as exc:
            raise MetricsUnavailableError(f"unreadable pod metrics for {selector}: {exc}") from exc
        return samples

    def node_usage(self, name: str) -> ResourceSample:
        try:
            raw = self.custom.get_cluster_custom_object(
                METRICS_GROUP, METRICS_VERSION, "nodes", name
            )
        except ApiException as exc:
            raise MetricsUnavailableError(f"node metrics unavailable for {name}: {exc.reason}") from exc
        except TRANSPORT_ERRORS as exc:
            raise MetricsUnavailableError(f"node metrics unavailable for {name}: {exc}") from exc
        usage = raw.get("usage") or {}
        try:
            return ResourceSample(
                name,
                parse_cpu(usage.get("cpu", "0")),
                parse_memory(usage.get("memory", "0")),
            )
        except ValueError as exc:
            raise MetricsUnavailableError(f"unreadable node metrics for {name}: {exc}") from exc


def _cluster_error(action: str, exc: ApiException) -> ClusterStateError:
    return ClusterStateError(f"{action} failed: {exc.status} {exc.reason}", status=exc.status or 0)


def _transport_error(action: str, exc: Exception) -> ClusterStateError:
    return ClusterStateError(f"{action} failed: {exc}")
