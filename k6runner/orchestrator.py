"""Submit k6 jobs, follow their output and wait for a terminal state."""

import json
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

import click
import structlog

from k6runner.errors import ClusterStateError, PersistenceError
from k6runner.jobspec import to_v1_job
from k6runner.models import (
    TIMED_OUT,
    UNKNOWN,
    JobDescriptor,
    MetricsSnapshot,
    RunOutcome,
    WaitPolicy,
)
from k6runner.waiting import WaitTimeout, wait_for

logger = structlog.get_logger(__name__)

GENERATOR_CONTAINER = "k6"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRunner:
    """Runs one JobDescriptor at a time against an injected cluster client.

    Args:
        cluster: Object implementing the ClusterClient methods.
        sink: Receives streamed log lines; defaults to ``click.echo``.
        delete_timeout: Upper bound for an old job of the same name to go away.
        clock, sleep, now: Injectable time sources for tests.
    """

    def __init__(self, cluster, sink: Callable[[str], None] = click.echo,
                 delete_timeout: float = 120.0, clock=None, sleep=None,
                 now: Callable[[], datetime] = _utcnow):
        self.cluster = cluster
        self.sink = sink
        self.delete_timeout = delete_timeout
        self._now = now
        self._wait_kwargs = {}
        if clock is not None:
            self._wait_kwargs["clock"] = clock
        if sleep is not None:
            self._wait_kwargs["sleep"] = sleep

    def submit(self, descriptor: JobDescriptor) -> str:
        """Free the job name and its results map if needed, then create the job.

        Returns the job name.
        """
        name, namespace = descriptor.name, descriptor.namespace
        if self.cluster.job_exists(name, namespace):
            logger.warning("Cleaning up existing job", job=name, namespace=namespace)
            self.cluster.delete_job(name, namespace)
            try:
                wait_for(
                    lambda: not self.cluster.job_exists(name, namespace),
                    timeout=self.delete_timeout,
                    interval=2.0,
                    description=f"job {name} to be deleted",
                    **self._wait_kwargs,
                )
            except WaitTimeout as exc:
                raise ClusterStateError(str(exc)) from exc

        # A leftover results map would be read back as this run's results
        results_cm = descriptor.results_configmap
        if self.cluster.read_configmap(results_cm, namespace) is not None:
            logger.warning("Removing stale results", configmap=results_cm, namespace=namespace)
            self.cluster.delete_configmap(results_cm, namespace)

        logger.info("Deploying job", job=name, namespace=namespace,
                    tier=descriptor.tier.name)
        self.cluster.create_job(namespace, to_v1_job(descriptor))
        return name

    def run(self, descriptor: JobDescriptor, policy: Optional[WaitPolicy] = None) -> RunOutcome:
        """Submit the job and block until it completes, fails or times out.

        On timeout the job is left in the cluster for inspection. A
        KeyboardInterrupt is re-raised without touching the remote job.
        """
        policy = policy or WaitPolicy()
        started_at = self._now()
        self.submit(descriptor)

        try:
            if policy.stream:
                self._stream(descriptor, policy)
            state = self._await_terminal(descriptor, policy)
        except KeyboardInterrupt:
            logger.warning("Interrupted; job keeps running in the cluster",
                           job=descriptor.name, namespace=descriptor.namespace)
            raise

        outcome = RunOutcome(
            job_name=descriptor.name,
            test_type=descriptor.test_type,
            rate=descriptor.rate,
            terminal_state=state,
            started_at=started_at,
            finished_at=self._now(),
        )
        log = logger.info if outcome.succeeded else logger.error
        log("Job finished", job=descriptor.name, state=state)
        return outcome

    def fetch_results(self, outcome: RunOutcome, namespace: str) -> RunOutcome:
        """Fold the summary and metrics published by the generator into the outcome.

        Raises:
            PersistenceError: If the results config map or summary is missing.
        """
        cm_name = f"{outcome.job_name}-results"
        data = self.cluster.read_configmap(cm_name, namespace)
        if data is None:
            raise PersistenceError(f"results config map not found: {cm_name}")
        try:
            summary = json.loads(data["summary.json"])
        except (KeyError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"no readable k6 summary in {cm_name}") from exc

        snapshot = None
        if data.get("metrics.json"):
            try:
                snapshot = MetricsSnapshot.from_dict(json.loads(data["metrics.json"]))
            except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as exc:
                logger.warning("Ignoring unreadable metrics snapshot", configmap=cm_name,
                               error=str(exc))
        return replace(outcome, summary=summary, snapshot=snapshot)

    # -- internal helpers -------------------------------------------------------

    def _stream(self, descriptor: JobDescriptor, policy: WaitPolicy) -> None:
        namespace = descriptor.namespace
        try:
            pod = wait_for(
                lambda: self._first_pod(descriptor),
                timeout=policy.pod_start_timeout,
                interval=1.0,
                description=f"a pod for job {descriptor.name}",
                **self._wait_kwargs,
            )
        except WaitTimeout as exc:
            raise ClusterStateError(f"failed to find pod for job {descriptor.name}") from exc

        logger.info("Pod found", pod=pod.name, phase=pod.phase)
        if pod.phase == "Pending":
            try:
                wait_for(
                    lambda: self._pod_started(descriptor, pod.name),
                    timeout=policy.pod_start_timeout,
                    interval=1.0,
                    description=f"pod {pod.name} to start",
                    **self._wait_kwargs,
                )
            except WaitTimeout as exc:
                raise ClusterStateError(f"pod {pod.name} did not start") from exc

        logger.info("Streaming logs", pod=pod.name, container=GENERATOR_CONTAINER)
        for line in self.cluster.stream_logs(pod.name, namespace, GENERATOR_CONTAINER):
            self.sink(line)

    def _first_pod(self, descriptor: JobDescriptor):
        pods = self.cluster.list_pods(descriptor.namespace, descriptor.selector)
        return pods[0] if pods else None

    def _pod_started(self, descriptor: JobDescriptor, name: str) -> bool:
        for pod in self.cluster.list_pods(descriptor.namespace, descriptor.selector):
            if pod.name == name:
                return pod.phase != "Pending"
        return False

    def _await_terminal(self, descriptor: JobDescriptor, policy: WaitPolicy) -> str:
        timeout = policy.timeout_seconds or descriptor.timeout_seconds
        errors = {"count": 0}

        def _poll():
            try:
                state = self.cluster.job_state(descriptor.name, descriptor.namespace)
            except ClusterStateError as exc:
                errors["count"] += 1
                logger.warning("Job status poll failed", job=descriptor.name,
                               attempt=errors["count"], error=str(exc))
                if errors["count"] >= policy.max_poll_errors:
                    return UNKNOWN
                return None
            errors["count"] = 0
            return state

        logger.info("Waiting for job to complete", job=descriptor.name, timeout=timeout)
        try:
            return wait_for(
                _poll,
                timeout=timeout,
                interval=policy.poll_interval,
                description=f"job {descriptor.name} to finish",
                **self._wait_kwargs,
            )
        except WaitTimeout:
            logger.error("Job did not finish in time; leaving it for inspection",
                         job=descriptor.name, timeout=timeout)
            return TIMED_OUT

