"""In-job coordination between the k6 generator and the metrics collector.

Both processes run as separate containers of one pod and share a volume.
They coordinate through files whose existence is the only message:

* the generator writes ``deployments.txt`` and ``nodepools.txt`` before k6
  starts, so the collector knows what to sample;
* the generator creates ``collect-metrics`` shortly before k6 is expected
  to finish;
* the collector writes ``metrics.json`` and then creates ``metrics-done``.

Each signal file has exactly one writer and one reader.
"""

import json
import os
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog

from k6runner.cluster import selector_from
from k6runner.errors import ClusterStateError, MetricsUnavailableError
from k6runner.models import JOB_APP_LABEL, MetricsSnapshot, ResourceSample
from k6runner.waiting import WaitTimeout, wait_for

logger = structlog.get_logger(__name__)

COLLECT_SIGNAL = "collect-metrics"
DONE_SIGNAL = "metrics-done"
DEPLOYMENTS_MANIFEST = "deployments"
NODEPOOLS_MANIFEST = "nodepools"
SNAPSHOT_FILE = "metrics.json"
SUMMARY_FILE = "summary.json"

SUMMARY_TREND_STATS = "avg,min,med,max,p(50),p(90),p(95),p(99)"


@dataclass(frozen=True)
class SidecarSettings:
    shared_dir: str
    namespace: str
    job_name: str
    test_type: str
    app_label: str
    script: str
    expected_runtime: int
    nodepool_label: str = "karpenter.sh/nodepool"
    save_results: bool = False
    signal_offset: float = 10.0
    metrics_wait: float = 30.0
    poll_interval: float = 1.0
    collector_grace: float = 120.0

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "SidecarSettings":
        env = os.environ if env is None else env
        return cls(
            shared_dir=env.get("SHARED_DIR", "/shared"),
            namespace=env.get("NAMESPACE", "default"),
            job_name=env.get("JOB_NAME", ""),
            test_type=env.get("TEST_TYPE", ""),
            app_label=env.get("APP_LABEL", ""),
            script=env.get("TEST_SCRIPT", ""),
            expected_runtime=int(env.get("EXPECTED_RUNTIME_SECONDS", "0")),
            nodepool_label=env.get("NODEPOOL_LABEL", "karpenter.sh/nodepool"),
            save_results=env.get("SAVE_RESULTS", "false").lower() == "true",
            signal_offset=float(env.get("SIGNAL_OFFSET_SECONDS", "10")),
            metrics_wait=float(env.get("METRICS_WAIT_SECONDS", "30")),
        )


class SignalChannel:
    """File-existence signalling over a shared directory."""

    def __init__(self, shared_dir: str, clock=None, sleep=None):
        self.shared_dir = shared_dir
        self._wait_kwargs = {}
        if clock is not None:
            self._wait_kwargs["clock"] = clock
        if sleep is not None:
            self._wait_kwargs["sleep"] = sleep

    def path(self, name: str) -> str:
        return os.path.join(self.shared_dir, name)

    def raise_signal(self, name: str) -> None:
        with open(self.path(name), "w") as f:
            f.write(datetime.now(timezone.utc).isoformat() + "\n")

    def is_raised(self, name: str) -> bool:
        return os.path.exists(self.path(name))

    def wait_for(self, name: str, timeout: float, interval: float = 1.0) -> bool:
        """Block until the signal exists. Returns False when the bound elapses."""
        try:
            wait_for(lambda: self.is_raised(name), timeout=timeout, interval=interval,
                     description=f"signal {name}", **self._wait_kwargs)
            return True
        except WaitTimeout:
            return False

    def write_manifest(self, kind: str, names: List[str]) -> None:
        # Written to a temp name first so the reader never sees a partial list
        final = self.path(f"{kind}.txt")
        tmp = final + ".tmp"
        with open(tmp, "w") as f:
            for name in names:
                f.write(name + "\n")
        os.replace(tmp, final)

    def has_manifest(self, kind: str) -> bool:
        return os.path.exists(self.path(f"{kind}.txt"))

    def read_manifest(self, kind: str) -> List[str]:
        with open(self.path(f"{kind}.txt"), "r") as f:
            return [line.strip() for line in f if line.strip()]

    def write_snapshot(self, snapshot: MetricsSnapshot) -> None:
        final = self.path(SNAPSHOT_FILE)
        tmp = final + ".tmp"
        with open(tmp, "w") as f:
            json.dump(snapshot.to_dict(), f, indent=2)
        os.replace(tmp, final)

    def read_snapshot(self) -> Optional[MetricsSnapshot]:
        path = self.path(SNAPSHOT_FILE)
        if not os.path.isfile(path):
            return None
        with open(path, "r") as f:
            return MetricsSnapshot.from_dict(json.load(f))


def _default_launcher(cmd: List[str]) -> subprocess.Popen:
    return subprocess.Popen(cmd)


class Generator:
    """Discovering -> Running -> SignalingCollector -> AwaitingMetrics -> Done."""

    def __init__(self, settings: SidecarSettings, cluster, channel: SignalChannel,
                 launcher: Callable[[List[str]], subprocess.Popen] = _default_launcher,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.cluster = cluster
        self.channel = channel
        self.launcher = launcher
        self.clock = clock
        self.sleep = sleep
        self.states: List[str] = []
        self.metrics_available = False

    def run(self) -> int:
        """Run the load test and return k6's exit code."""
        self._enter("Discovering")
        self.discover()

        self._enter("Running")
        proc = self.launcher(self.k6_command())
        signal_at = self.clock() + max(0.0, self.settings.expected_runtime - self.settings.signal_offset)
        while proc.poll() is None and self.clock() < signal_at:
            self.sleep(self.settings.poll_interval)

        self._enter("SignalingCollector")
        self.channel.raise_signal(COLLECT_SIGNAL)
        logger.info("Signalled metrics collector", job=self.settings.job_name)
        exit_code = proc.wait()

        self._enter("AwaitingMetrics")
        self.metrics_available = self.channel.wait_for(
            DONE_SIGNAL, timeout=self.settings.metrics_wait,
            interval=self.settings.poll_interval,
        )
        if not self.metrics_available:
            logger.warning("Metrics unavailable", job=self.settings.job_name,
                           waited=self.settings.metrics_wait)

        self._enter("Done")
        if self.settings.save_results:
            self.publish_results()
        logger.info("Load test finished", job=self.settings.job_name, exit_code=exit_code)
        return exit_code

    def discover(self) -> None:
        """Write the deployment and node pool manifests for the collector.

        Discovery failures still produce (empty) manifests so the collector
        is never left waiting on files that will not appear.
        """
        selector = f"app={self.settings.app_label}" if self.settings.app_label else None
        deployments: List[str] = []
        nodepools: List[str] = []
        try:
            deployments = sorted(d.name for d in self.cluster.list_deployments(
                self.settings.namespace, selector))
            label = self.settings.nodepool_label
            nodepools = sorted({n.labels[label] for n in self.cluster.list_nodes(label)
                                if label in n.labels})
        except ClusterStateError as exc:
            logger.warning("Discovery failed", error=str(exc))
        self.channel.write_manifest(DEPLOYMENTS_MANIFEST, deployments)
        self.channel.write_manifest(NODEPOOLS_MANIFEST, nodepools)
        logger.info("Discovery complete", deployments=len(deployments), nodepools=len(nodepools))

    def k6_command(self) -> List[str]:
        return [
            "k6", "run",
            "--summary-export", self.channel.path(SUMMARY_FILE),
            "--summary-trend-stats", SUMMARY_TREND_STATS,
            self.settings.script,
        ]

    def publish_results(self) -> None:
        """Copy the k6 summary and metrics snapshot into the results config map."""
        data = {}
        for key in (SUMMARY_FILE, SNAPSHOT_FILE):
            path = self.channel.path(key)
            if os.path.isfile(path):
                with open(path, "r") as f:
                    data[key] = f.read()
        if SUMMARY_FILE not in data:
            logger.warning("No k6 summary to publish", job=self.settings.job_name)
            return
        name = f"{self.settings.job_name}-results"
        labels = {"app": JOB_APP_LABEL, "k6-results": "true",
                  "test-type": self.settings.test_type}
        try:
            self.cluster.apply_configmap(name, self.settings.namespace, data, labels)
            logger.info("Published results", configmap=name)
        except ClusterStateError as exc:
            logger.error("Failed to publish results", configmap=name, error=str(exc))

    def _enter(self, state: str) -> None:
        self.states.append(state)
        logger.debug("Generator state", state=state)


class Collector:
    """Idle -> Waiting -> Collecting -> Writing -> Signaling -> Exit."""

    def __init__(self, settings: SidecarSettings, cluster, channel: SignalChannel,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.settings = settings
        self.cluster = cluster
        self.channel = channel
        self._now = now
        self.states: List[str] = ["Idle"]
        self.snapshot: Optional[MetricsSnapshot] = None

    def run(self) -> int:
        self._enter("Waiting")
        bound = self.settings.expected_runtime + self.settings.collector_grace
        ready = self.channel.wait_for(COLLECT_SIGNAL, timeout=bound,
                                      interval=self.settings.poll_interval)
        if ready:
            ready = self.channel.has_manifest(DEPLOYMENTS_MANIFEST) and \
                self.channel.has_manifest(NODEPOOLS_MANIFEST)
        if not ready:
            logger.warning("No collection signal or discovery output; exiting",
                           job=self.settings.job_name)
            self._enter("Exit")
            return 0

        self._enter("Collecting")
        try:
            self.snapshot = self.collect()
        except MetricsUnavailableError as exc:
            logger.warning("Metrics collection failed", error=str(exc))

        if self.snapshot is not None:
            self._enter("Writing")
            self.channel.write_snapshot(self.snapshot)

        self._enter("Signaling")
        self.channel.raise_signal(DONE_SIGNAL)
        self._enter("Exit")
        return 0

    def collect(self) -> MetricsSnapshot:
        """Sample every listed deployment and node.

        A target whose metrics cannot be read is logged and left out. Raises
        MetricsUnavailableError if listing fails or no target could be read.
        """
        namespace = self.settings.namespace
        deployments: Dict[str, List[ResourceSample]] = {}
        nodepools: Dict[str, List[ResourceSample]] = {}
        failures = []
        wanted = set(self.channel.read_manifest(DEPLOYMENTS_MANIFEST))
        try:
            for d in self.cluster.list_deployments(namespace):
                if d.name not in wanted or not d.match_labels:
                    continue
                try:
                    deployments[d.name] = self.cluster.pod_usage(
                        namespace, selector_from(d.match_labels))
                except (ClusterStateError, MetricsUnavailableError, ValueError) as exc:
                    logger.warning("Skipping deployment metrics", deployment=d.name,
                                   error=str(exc))
                    failures.append(d.name)

            label = self.settings.nodepool_label
            for pool in self.channel.read_manifest(NODEPOOLS_MANIFEST):
                nodepools[pool] = []
                for node in self.cluster.list_nodes(f"{label}={pool}"):
                    try:
                        nodepools[pool].append(self.cluster.node_usage(node.name))
                    except (ClusterStateError, MetricsUnavailableError, ValueError) as exc:
                        logger.warning("Skipping node metrics", node=node.name,
                                       nodepool=pool, error=str(exc))
                        failures.append(node.name)
        except ClusterStateError as exc:
            raise MetricsUnavailableError(str(exc)) from exc

        collected = len(deployments) + sum(len(s) for s in nodepools.values())
        if failures and not collected:
            raise MetricsUnavailableError(f"no metrics readable for {', '.join(failures)}")

        return MetricsSnapshot(
            timestamp=self._now().isoformat(),
            deployments=deployments,
            nodepools=nodepools,
        )

    def _enter(self, state: str) -> None:
        self.states.append(state)
        logger.debug("Collector state", state=state)
