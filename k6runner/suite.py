"""Run a cross product of test types and rates, one after another."""

import re
import time
from typing import Callable, Iterable, List, Sequence

import structlog

from k6runner.errors import ClusterStateError, InputError, PersistenceError, RunTimeoutError
from k6runner.models import TEST_TYPES, SuiteResult, job_name

logger = structlog.get_logger(__name__)

# execute(test_type, rate, wait) -> True when the run passed
Executor = Callable[[str, int, bool], bool]


def expand_test_types(value: str) -> List[str]:
    if value == "all":
        return list(TEST_TYPES)
    if value not in TEST_TYPES:
        raise InputError(f"invalid test type: {value!r} (must be: {', '.join(TEST_TYPES)}, all)")
    return [value]


def parse_rps_levels(value: str) -> List[int]:
    """Parse ``"10 50,100"`` into ``[10, 50, 100]``."""
    parts = [p for p in re.split(r"[\s,]+", value.strip()) if p]
    if not parts:
        raise InputError("rps levels must not be empty")
    levels = []
    for p in parts:
        if not p.isdigit() or int(p) <= 0:
            raise InputError(f"invalid rps level: {p!r}")
        levels.append(int(p))
    return levels


class SuiteRunner:
    """Sequences runs with a delay between them and counts pass/fail.

    A failing run never stops the suite; only input errors do.
    """

    def __init__(self, execute: Executor, delay: float = 30.0, parallel: bool = False,
                 sleep: Callable[[float], None] = time.sleep):
        self.execute = execute
        self.delay = delay
        self.parallel = parallel
        self.sleep = sleep

    def run_suite(self, test_types: Iterable[str], rates: Sequence[int]) -> SuiteResult:
        plan = [(t, r) for t in test_types for r in rates]
        result = SuiteResult()
        for index, (test_type, rate) in enumerate(plan, start=1):
            key = job_name(test_type, rate)
            result.total += 1
            logger.info("Starting run", run=index, of=len(plan), key=key)
            try:
                passed = self.execute(test_type, rate, not self.parallel)
            except (ClusterStateError, RunTimeoutError, PersistenceError) as exc:
                logger.error("Run errored", key=key, error=str(exc))
                passed = False

            if passed:
                result.passed += 1
                logger.info("Run passed", key=key)
            else:
                result.failed += 1
                result.failed_keys.append(key)
                logger.error("Run failed", key=key)

            if not self.parallel and index < len(plan) and self.delay > 0:
                logger.info("Waiting before next run", seconds=self.delay)
                self.sleep(self.delay)
        return result
