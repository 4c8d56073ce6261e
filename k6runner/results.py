"""Append-only result files: one JSON document per completed run."""

import json
import os
import re
from typing import List, Optional, Tuple

import structlog

from k6runner.errors import NotFoundError, PersistenceError
from k6runner.models import MetricsSnapshot, ResultRecord, RunOutcome

logger = structlog.get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"
_FILENAME = re.compile(
    r"^(?P<type>[a-z]+)-(?P<rate>\d+)rps-(?P<ts>\d{4}-\d{2}-\d{2}-\d{6})\.json$"
)


def result_filename(test_type: str, rate: int, timestamp: str) -> str:
    return f"{test_type}-{rate}rps-{timestamp}.json"


def normalize_summary(summary: dict) -> dict:
    """Reduce a k6 ``--summary-export`` document to the result file metrics.

    k6 exports trends as ``med``/``p(95)`` and rates as ``value``; records
    use ``p50``/``p95`` and ``rate``. Documents already in record form pass
    through unchanged.
    """
    metrics = (summary.get("metrics") if isinstance(summary, dict) else None) or {}
    if not isinstance(metrics, dict):
        metrics = {}

    def group(name):
        value = metrics.get(name) or {}
        return value if isinstance(value, dict) else {}

    reqs = group("http_reqs")
    failed = group("http_req_failed")
    duration = group("http_req_duration")

    def pick(section, *keys):
        for key in keys:
            if key in section and section[key] is not None:
                return section[key]
        return 0

    return {
        "http_reqs": {
            "count": int(pick(reqs, "count")),
            "rate": float(pick(reqs, "rate")),
        },
        "http_req_failed": {
            "rate": float(pick(failed, "rate", "value")),
        },
        "http_req_duration": {
            "p50": float(pick(duration, "p50", "p(50)", "med")),
            "p95": float(pick(duration, "p95", "p(95)")),
            "p99": float(pick(duration, "p99", "p(99)")),
            "avg": float(pick(duration, "avg")),
        },
    }


class ResultStore:
    """Reads and writes result files under ``results_dir``."""

    def __init__(self, results_dir: str):
        self.results_dir = results_dir

    def save(self, outcome: RunOutcome, snapshot: Optional[MetricsSnapshot] = None) -> ResultRecord:
        """Persist a completed run. Never overwrites an existing record.

        Raises:
            PersistenceError: If the outcome carries no summary, the directory
                is not writable, or a record with the same key already exists.
        """
        if outcome.summary is None:
            raise PersistenceError(f"no k6 summary available for {outcome.job_name}")
        snapshot = snapshot or outcome.snapshot

        timestamp = outcome.finished_at.strftime(TIMESTAMP_FORMAT)
        document = {
            "test_type": outcome.test_type,
            "rps": outcome.rate,
            "timestamp": timestamp,
            "state": outcome.terminal_state,
            "metrics": normalize_summary(outcome.summary),
        }
        if snapshot is not None:
            document["resource_metrics"] = snapshot.to_dict()

        path = os.path.join(self.results_dir,
                            result_filename(outcome.test_type, outcome.rate, timestamp))
        try:
            os.makedirs(self.results_dir, exist_ok=True)
            with open(path, "x") as f:
                json.dump(document, f, indent=2)
                f.write("\n")
        except FileExistsError as exc:
            raise PersistenceError(f"result already exists: {path}") from exc
        except OSError as exc:
            raise PersistenceError(f"cannot write result {path}: {exc}") from exc

        logger.info("Saved result", path=path)
        return _document_to_record(document, path)

    def load(self, test_type: str, rate: int, limit: int) -> List[ResultRecord]:
        """Return up to ``limit`` readable records, newest first.

        Unreadable files are logged and skipped; older files take their place.

        Raises:
            NotFoundError: If the directory is missing or no file is readable.
        """
        pattern = f"{test_type}-{rate}rps-*.json"
        entries = self._matching(test_type, rate)
        if not entries:
            raise NotFoundError(f"no result files found matching: {pattern}")
        records = []
        for _, path in entries:
            if len(records) >= limit:
                break
            try:
                records.append(self._read(path))
            except PersistenceError as exc:
                logger.warning("Skipping unreadable result", path=path, error=str(exc))
        if not records:
            raise NotFoundError(f"no readable result files matching: {pattern}")
        return records

    def prune(self, test_type: str, rate: int, keep: int, dry_run: bool = False) -> List[str]:
        """Delete all but the newest ``keep`` records. Returns the affected paths."""
        entries = self._matching(test_type, rate)
        doomed = [path for _, path in entries[keep:]]
        for path in doomed:
            if dry_run:
                logger.info("Would delete result", path=path)
                continue
            os.remove(path)
            logger.info("Deleted result", path=path)
        return doomed

    # -- internal helpers -------------------------------------------------------

    def _matching(self, test_type: str, rate: int) -> List[Tuple[str, str]]:
        if not os.path.isdir(self.results_dir):
            return []
        entries = []
        for name in os.listdir(self.results_dir):
            match = _FILENAME.match(name)
            if not match:
                continue
            if match.group("type") != test_type or int(match.group("rate")) != rate:
                continue
            entries.append((match.group("ts"), os.path.join(self.results_dir, name)))
        entries.sort(reverse=True)
        return entries

    def _read(self, path: str) -> ResultRecord:
        try:
            with open(path, "r") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"failed to read result {path}: {exc}") from exc
        if not isinstance(document, dict):
            raise PersistenceError(f"result {path} must be a JSON object")
        match = _FILENAME.match(os.path.basename(path))
        document.setdefault("test_type", match.group("type"))
        document.setdefault("rps", int(match.group("rate")))
        document["timestamp"] = match.group("ts")
        try:
            return _document_to_record(document, path)
        except (AttributeError, TypeError, ValueError) as exc:
            raise PersistenceError(f"malformed result {path}: {exc}") from exc


def _document_to_record(document: dict, path: str) -> ResultRecord:
    metrics = normalize_summary(document)
    return ResultRecord(
        test_type=document["test_type"],
        rate=int(document["rps"]),
        timestamp=document["timestamp"],
        total_requests=metrics["http_reqs"]["count"],
        error_rate=metrics["http_req_failed"]["rate"],
        p50=metrics["http_req_duration"]["p50"],
        p95=metrics["http_req_duration"]["p95"],
        p99=metrics["http_req_duration"]["p99"],
        avg=metrics["http_req_duration"]["avg"],
        achieved_rate=metrics["http_reqs"]["rate"],
        path=path,
        resources=document.get("resource_metrics"),
    )
