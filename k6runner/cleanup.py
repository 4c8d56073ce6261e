"""Find and delete k6 jobs and shared resources matching a filter."""

from datetime import datetime, timezone
from typing import List, Optional

import structlog

from k6runner.durations import parse_age
from k6runner.errors import InputError
from k6runner.models import COMPLETE, FAILED, JOB_APP_LABEL, TEST_TYPES, CleanupFilter, JobInfo

logger = structlog.get_logger(__name__)

MODES = ("all", "jobs", "completed", "failed")

SCRIPT_CONFIGMAPS = ("k6-scripts-v2", "k6-urls-data", "k6-stress-script")
RESULTS_SELECTOR = "k6-results=true"

RBAC_OBJECTS = (
    ("serviceaccount", "k6-test-runner"),
    ("role", "k6-metrics-reader"),
    ("rolebinding", "k6-metrics-reader"),
    ("clusterrole", "k6-node-metrics-reader"),
    ("clusterrolebinding", "k6-node-metrics-reader"),
)

_STATUS_BY_MODE = {"completed": COMPLETE, "failed": FAILED}


class CleanupManager:
    """Computes deletion candidates and, unless dry-running, deletes them."""

    def __init__(self, cluster, namespace: str):
        self.cluster = cluster
        self.namespace = namespace

    def plan(self, flt: CleanupFilter, now: Optional[datetime] = None) -> List[str]:
        """Return ``kind/name`` identifiers that ``flt`` selects. Read-only."""
        if flt.mode not in MODES:
            raise InputError(f"invalid cleanup mode: {flt.mode!r} (must be: {', '.join(MODES)})")
        if flt.test_type is not None and flt.test_type not in TEST_TYPES:
            raise InputError(f"invalid test type: {flt.test_type!r}")
        threshold = parse_age(flt.older_than) if flt.older_than else None
        now = now or datetime.now(timezone.utc)

        selector = f"app={JOB_APP_LABEL}"
        if flt.test_type:
            selector += f",test-type={flt.test_type}"
        if flt.rate is not None:
            selector += f",rps={flt.rate}"
        logger.debug("Listing jobs", selector=selector, namespace=self.namespace)

        candidates = [
            f"job/{job.name}"
            for job in self.cluster.list_jobs(self.namespace, selector)
            if self._selects(job, flt, threshold, now)
        ]

        if flt.mode == "all" and not flt.narrowed:
            if not flt.preserve_results:
                existing = set(self.cluster.list_configmaps(self.namespace))
                candidates += [f"configmap/{cm}" for cm in SCRIPT_CONFIGMAPS if cm in existing]
                candidates += [
                    f"configmap/{cm}"
                    for cm in sorted(self.cluster.list_configmaps(self.namespace, RESULTS_SELECTOR))
                ]
            candidates += [f"{kind}/{name}" for kind, name in RBAC_OBJECTS]
        return candidates

    def clean(self, flt: CleanupFilter, dry_run: bool = False,
              now: Optional[datetime] = None) -> List[str]:
        """Delete what ``plan`` selects. Dry runs return the same list untouched."""
        candidates = self.plan(flt, now)
        for ident in candidates:
            if dry_run:
                logger.info("Would delete", resource=ident)
            else:
                logger.info("Deleting", resource=ident)
                self._delete(ident)
        return candidates

    def _selects(self, job: JobInfo, flt: CleanupFilter, threshold: Optional[int],
                 now: datetime) -> bool:
        wanted = _STATUS_BY_MODE.get(flt.mode)
        if wanted is not None and job.state != wanted:
            return False
        if threshold is not None:
            if job.created_at is None:
                return False
            if (now - job.created_at).total_seconds() < threshold:
                return False
        return True

    def _delete(self, ident: str) -> None:
        kind, name = ident.split("/", 1)
        if kind == "job":
            self.cluster.delete_job(name, self.namespace)
        elif kind == "configmap":
            self.cluster.delete_configmap(name, self.namespace)
        else:
            self.cluster.delete_rbac(kind, name, self.namespace)
