"""Shared fakes: an in-memory cluster and a controllable clock."""

import json
import os
from datetime import datetime, timezone

import pytest
import structlog

from k6runner.errors import ClusterStateError, MetricsUnavailableError
from k6runner.models import COMPLETE, DeploymentInfo, JobInfo, NodeInfo, PodInfo


FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "..", "fixtures")


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    # configure_logging binds the stream current at call time; CliRunner closes it
    structlog.reset_defaults()


def load_fixture(name):
    with open(os.path.join(FIXTURES_DIR, name), "r") as f:
        return f.read()


def _matches(selector, labels):
    if not selector:
        return True
    for part in selector.split(","):
        if "=" in part:
            key, value = part.split("=", 1)
            if labels.get(key) != value:
                return False
        elif part not in labels:
            return False
    return True


class FakeClock:
    """Monotonic clock whose sleep() just advances time."""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCluster:
    """In-memory stand-in for ClusterClient.

    Created jobs immediately get one Running pod and settle into
    ``default_state`` (or ``job_states[name]``). Set ``on_create`` to run
    extra setup, e.g. publishing a results config map.
    """

    def __init__(self):
        self.jobs = {}
        self.pods = {}
        self.configmaps = {}
        self.deployments = []
        self.nodes = []
        self.pod_metrics = {}
        self.node_metrics = {}
        self.logs = {}
        self.rbac = set()
        self.calls = []

        self.default_state = COMPLETE
        self.job_states = {}
        self.auto_pods = True
        self.pod_phase = "Running"
        self.sticky_deletes = False
        self.status_failures = 0
        self.discovery_error = False
        self.metrics_error = False
        self.on_create = None

    # -- helpers for tests ------------------------------------------------------

    def add_job(self, name, namespace="prod", state=COMPLETE, created_at=None, labels=None):
        self.jobs[(namespace, name)] = {
            "state": state,
            "created_at": created_at or datetime.now(timezone.utc),
            "labels": dict(labels or {}),
            "body": None,
        }

    def add_configmap(self, name, namespace="prod", data=None, labels=None):
        self.configmaps[(namespace, name)] = {"data": dict(data or {}), "labels": dict(labels or {})}

    def publish_results(self, job, namespace="prod", summary=None, metrics=None):
        data = {"summary.json": summary if summary is not None else load_fixture("k6-summary.json")}
        if metrics is not None:
            data["metrics.json"] = metrics
        self.add_configmap(f"{job}-results", namespace, data, {"k6-results": "true"})

    def snapshot(self):
        return (
            sorted(self.jobs),
            sorted(self.configmaps),
            sorted(self.rbac),
        )

    # -- jobs -------------------------------------------------------------------

    def job_exists(self, name, namespace):
        return (namespace, name) in self.jobs

    def create_job(self, namespace, body):
        name = body.metadata.name
        self.calls.append(("create_job", name))
        labels = dict(body.metadata.labels or {})
        self.jobs[(namespace, name)] = {
            "state": self.job_states.get(name, self.default_state),
            "created_at": datetime.now(timezone.utc),
            "labels": labels,
            "body": body,
        }
        if self.auto_pods:
            self.pods.setdefault(namespace, []).append(
                PodInfo(name=f"{name}-x7k2p", phase=self.pod_phase, labels=labels)
            )
        if self.on_create is not None:
            self.on_create(namespace, body)

    def delete_job(self, name, namespace):
        self.calls.append(("delete_job", name))
        if not self.sticky_deletes:
            self.jobs.pop((namespace, name), None)

    def job_state(self, name, namespace):
        if self.status_failures:
            self.status_failures -= 1
            raise ClusterStateError("reading status failed: 500 Internal Server Error", status=500)
        job = self.jobs.get((namespace, name))
        if job is None:
            raise ClusterStateError(f"reading status of job {name} failed: 404", status=404)
        return job["state"]

    def list_jobs(self, namespace, selector):
        out = []
        for (ns, name), job in sorted(self.jobs.items()):
            if ns != namespace or not _matches(selector, job["labels"]):
                continue
            out.append(JobInfo(name=name, state=job["state"] or "Active",
                               created_at=job["created_at"], labels=job["labels"]))
        return out

    # -- pods -------------------------------------------------------------------

    def list_pods(self, namespace, selector):
        return [p for p in self.pods.get(namespace, []) if _matches(selector, p.labels)]

    def stream_logs(self, pod, namespace, container):
        self.calls.append(("stream_logs", pod, container))
        for line in self.logs.get(pod, []):
            yield line

    # -- config maps ------------------------------------------------------------

    def read_configmap(self, name, namespace):
        cm = self.configmaps.get((namespace, name))
        return dict(cm["data"]) if cm else None

    def apply_configmap(self, name, namespace, data, labels=None):
        self.calls.append(("apply_configmap", name))
        self.add_configmap(name, namespace, data, labels)

    def list_configmaps(self, namespace, selector=None):
        return [name for (ns, name), cm in sorted(self.configmaps.items())
                if ns == namespace and _matches(selector, cm["labels"])]

    def delete_configmap(self, name, namespace):
        self.calls.append(("delete_configmap", name))
        self.configmaps.pop((namespace, name), None)

    def delete_rbac(self, kind, name, namespace):
        self.calls.append(("delete_rbac", kind, name))
        self.rbac.discard((kind, name))

    # -- discovery and metrics --------------------------------------------------

    def list_deployments(self, namespace, selector=None):
        if self.discovery_error:
            raise ClusterStateError("listing deployments failed: 403 Forbidden", status=403)
        return [d for d, labels in self.deployments if _matches(selector, labels)]

    def list_nodes(self, selector=None):
        if self.discovery_error:
            raise ClusterStateError("listing nodes failed: 403 Forbidden", status=403)
        return [n for n in self.nodes if _matches(selector, n.labels)]

    def pod_usage(self, namespace, selector):
        if self.metrics_error:
            raise MetricsUnavailableError("pod metrics unavailable: Service Unavailable")
        return list(self.pod_metrics.get(selector, []))

    def node_usage(self, name):
        if self.metrics_error:
            raise MetricsUnavailableError(f"node metrics unavailable for {name}")
        return self.node_metrics[name]

    def add_deployment(self, name, labels, match_labels):
        self.deployments.append((DeploymentInfo(name=name, match_labels=match_labels), labels))

    def add_node(self, name, labels):
        self.nodes.append(NodeInfo(name=name, labels=labels))


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clock():
    return FakeClock()


def write_config(tmp_path, **overrides):
    """Write a JSON harness config under tmp_path and return its path."""
    raw = {
        "namespace": "prod",
        "results": {"dir": str(tmp_path / "results"), "retention": 3},
        "reports": {"dir": str(tmp_path / "reports")},
        "test": {"delay_seconds": 0},
        "logging": {"level": "error"},
    }
    raw.update(overrides)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(raw))
    return str(path)
