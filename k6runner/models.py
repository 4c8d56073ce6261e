"""Data models for test runs, jobs, results and cluster views."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

TEST_TYPES = ("stress", "spike", "soak", "load")

JOB_APP_LABEL = "k6-load-test"

# Terminal states of a run
COMPLETE = "Complete"
FAILED = "Failed"
TIMED_OUT = "TimedOut"
UNKNOWN = "Unknown"

IMPROVED = "Improved"
DEGRADED = "Degraded"
UNCHANGED = "Unchanged"


def job_name(test_type: str, rate: int) -> str:
    return f"{test_type}-{rate}rps"


@dataclass(frozen=True)
class TestRunSpec:
    __test__ = False  # not a pytest test class

    test_type: str
    rate: int
    duration: Optional[str] = None
    overrides: Dict[str, object] = field(default_factory=dict)
    namespace: Optional[str] = None
    base_url: Optional[str] = None
    app_label: Optional[str] = None


@dataclass(frozen=True)
class ResourceTier:
    name: str  # "low", "medium", "high"
    cpu_request: str
    memory_request: str
    cpu_limit: str
    memory_limit: str


@dataclass(frozen=True)
class JobDescriptor:
    name: str
    namespace: str
    test_type: str
    rate: int
    tier: ResourceTier
    env: Dict[str, str]
    script_path: str
    ttl_seconds_after_finished: int
    service_account: str
    generator_image: str
    collector_image: str
    expected_runtime_seconds: int
    timeout_seconds: int
    labels: Dict[str, str] = field(default_factory=dict)
    node_selector: Dict[str, str] = field(default_factory=dict)
    tolerations: List[Dict[str, str]] = field(default_factory=list)
    script_configmap: str = "k6-scripts-v2"
    data_configmap: str = "k6-urls-data"

    @property
    def selector(self) -> str:
        return ",".join(f"{k}={v}" for k, v in self.labels.items())

    @property
    def results_configmap(self) -> str:
        return f"{self.name}-results"


@dataclass(frozen=True)
class WaitPolicy:
    stream: bool = False
    timeout_seconds: Optional[int] = None  # falls back to the descriptor's timeout
    poll_interval: float = 5.0
    pod_start_timeout: float = 60.0
    max_poll_errors: int = 3


@dataclass(frozen=True)
class ResourceSample:
    name: str
    cpu_millicores: float
    memory_mib: float

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "cpu_millicores": round(self.cpu_millicores, 2),
            "memory_mib": round(self.memory_mib, 2),
        }


@dataclass(frozen=True)
class MetricsSnapshot:
    timestamp: str
    deployments: Dict[str, List[ResourceSample]] = field(default_factory=dict)
    nodepools: Dict[str, List[ResourceSample]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "deployments": {
                name: [s.to_dict() for s in samples]
                for name, samples in self.deployments.items()
            },
            "nodepools": {
                name: [s.to_dict() for s in samples]
                for name, samples in self.nodepools.items()
            },
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "MetricsSnapshot":
        def _samples(section):
            return {
                name: [
                    ResourceSample(
                        name=s.get("name", ""),
                        cpu_millicores=float(s.get("cpu_millicores", 0)),
                        memory_mib=float(s.get("memory_mib", 0)),
                    )
                    for s in samples
                ]
                for name, samples in (section or {}).items()
            }

        return cls(
            timestamp=str(raw.get("timestamp", "")),
            deployments=_samples(raw.get("deployments")),
            nodepools=_samples(raw.get("nodepools")),
        )


@dataclass(frozen=True)
class RunOutcome:
    job_name: str
    test_type: str
    rate: int
    terminal_state: str  # Complete, Failed, TimedOut, Unknown
    started_at: datetime
    finished_at: datetime
    summary: Optional[dict] = None  # raw k6 summary export
    snapshot: Optional[MetricsSnapshot] = None

    @property
    def succeeded(self) -> bool:
        return self.terminal_state == COMPLETE


@dataclass(frozen=True)
class ResultRecord:
    test_type: str
    rate: int
    timestamp: str  # YYYY-MM-DD-HHMMSS, as encoded in the filename
    total_requests: int = 0
    error_rate: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    avg: float = 0.0
    achieved_rate: float = 0.0
    path: str = ""
    resources: Optional[dict] = None


@dataclass(frozen=True)
class MetricTrend:
    metric: str  # "p95", "error_rate"
    old: float
    new: float
    delta_percent: float
    classification: str  # Improved, Degraded, Unchanged


@dataclass(frozen=True)
class TrendReport:
    test_type: str
    rate: int
    window: int
    trends: List[MetricTrend] = field(default_factory=list)

    def get(self, metric: str) -> Optional[MetricTrend]:
        for t in self.trends:
            if t.metric == metric:
                return t
        return None


@dataclass(frozen=True)
class CleanupFilter:
    mode: str  # "all", "jobs", "completed", "failed"
    older_than: Optional[str] = None
    test_type: Optional[str] = None
    rate: Optional[int] = None
    preserve_results: bool = False

    @property
    def narrowed(self) -> bool:
        return any(v is not None for v in (self.older_than, self.test_type, self.rate))


@dataclass
class SuiteResult:
    total: int = 0
    passed: int = 0
    failed: int = 0
    failed_keys: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


# -- cluster views -------------------------------------------------------------


@dataclass(frozen=True)
class JobInfo:
    name: str
    state: str  # Complete, Failed, Active, Unknown
    created_at: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PodInfo:
    name: str
    phase: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeploymentInfo:
    name: str
    match_labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeInfo:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
