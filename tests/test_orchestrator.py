"""Tests for job submission, waiting and result retrieval."""

import json

import pytest

from k6runner.config import HarnessConfig
from k6runner.errors import ClusterStateError, PersistenceError
from k6runner.jobspec import build
from k6runner.models import COMPLETE, FAILED, TIMED_OUT, UNKNOWN, TestRunSpec, WaitPolicy
from k6runner.orchestrator import JobRunner

from conftest import load_fixture


def _descriptor(test_type="stress", rate=100, duration="2m"):
    return build(TestRunSpec(test_type=test_type, rate=rate, duration=duration), HarnessConfig())


def _runner(cluster, clock, lines=None, **kwargs):
    sink = lines.append if lines is not None else (lambda line: None)
    return JobRunner(cluster, sink=sink, clock=clock, sleep=clock.sleep, **kwargs)


class TestSubmit:
    def test_creates_job(self, cluster, clock):
        name = _runner(cluster, clock).submit(_descriptor())
        assert name == "stress-100rps"
        assert cluster.calls == [("create_job", "stress-100rps")]
        body = cluster.jobs[("prod", "stress-100rps")]["body"]
        assert body.spec.template.spec.containers[0].name == "k6"

    def test_replaces_existing_job(self, cluster, clock):
        cluster.add_job("stress-100rps", state=FAILED)
        _runner(cluster, clock).submit(_descriptor())
        assert cluster.calls == [("delete_job", "stress-100rps"), ("create_job", "stress-100rps")]
        assert cluster.jobs[("prod", "stress-100rps")]["state"] == COMPLETE

    def test_removes_stale_results_configmap(self, cluster, clock):
        cluster.add_job("stress-100rps", state=COMPLETE)
        cluster.publish_results("stress-100rps")
        _runner(cluster, clock).submit(_descriptor())
        assert cluster.calls == [
            ("delete_job", "stress-100rps"),
            ("delete_configmap", "stress-100rps-results"),
            ("create_job", "stress-100rps"),
        ]
        assert cluster.read_configmap("stress-100rps-results", "prod") is None

    def test_other_results_configmaps_untouched(self, cluster, clock):
        cluster.publish_results("stress-200rps")
        _runner(cluster, clock).submit(_descriptor())
        assert cluster.calls == [("create_job", "stress-100rps")]
        assert cluster.read_configmap("stress-200rps-results", "prod") is not None

    def test_rerun_without_publish_has_no_results(self, cluster, clock):
        cluster.on_create = lambda ns, body: cluster.publish_results(body.metadata.name, ns)
        runner = _runner(cluster, clock)
        first = runner.run(_descriptor())
        assert runner.fetch_results(first, "prod").summary is not None

        cluster.on_create = None
        second = runner.run(_descriptor())
        with pytest.raises(PersistenceError, match="results config map not found"):
            runner.fetch_results(second, "prod")

    def test_delete_that_never_finishes(self, cluster, clock):
        cluster.add_job("stress-100rps")
        cluster.sticky_deletes = True
        runner = _runner(cluster, clock, delete_timeout=10)
        with pytest.raises(ClusterStateError, match="to be deleted"):
            runner.submit(_descriptor())
        assert ("create_job", "stress-100rps") not in cluster.calls


class TestRun:
    def test_complete(self, cluster, clock):
        outcome = _runner(cluster, clock).run(_descriptor())
        assert outcome.terminal_state == COMPLETE
        assert outcome.succeeded
        assert outcome.job_name == "stress-100rps"
        assert outcome.rate == 100
        assert outcome.finished_at >= outcome.started_at

    def test_failed(self, cluster, clock):
        cluster.default_state = FAILED
        outcome = _runner(cluster, clock).run(_descriptor())
        assert outcome.terminal_state == FAILED
        assert not outcome.succeeded

    def test_timeout_leaves_job_in_place(self, cluster, clock):
        cluster.default_state = None
        policy = WaitPolicy(timeout_seconds=30, poll_interval=5)
        outcome = _runner(cluster, clock).run(_descriptor(), policy)
        assert outcome.terminal_state == TIMED_OUT
        assert ("prod", "stress-100rps") in cluster.jobs
        assert not any(c[0] == "delete_job" for c in cluster.calls)
        assert clock.now == 30

    def test_default_timeout_comes_from_descriptor(self, cluster, clock):
        cluster.default_state = None
        outcome = _runner(cluster, clock).run(_descriptor(), WaitPolicy(poll_interval=60))
        assert outcome.terminal_state == TIMED_OUT
        assert clock.now == 600

    def test_transient_poll_errors_are_tolerated(self, cluster, clock):
        cluster.status_failures = 2
        outcome = _runner(cluster, clock).run(_descriptor(), WaitPolicy(poll_interval=1))
        assert outcome.terminal_state == COMPLETE

    def test_persistent_poll_errors_give_unknown(self, cluster, clock):
        cluster.status_failures = 100
        outcome = _runner(cluster, clock).run(_descriptor(), WaitPolicy(poll_interval=1))
        assert outcome.terminal_state == UNKNOWN

    def test_streams_generator_logs(self, cluster, clock):
        cluster.logs["stress-100rps-x7k2p"] = ["running (0m01s)", "default ✓ [ 100% ]"]
        lines = []
        outcome = _runner(cluster, clock, lines).run(_descriptor(), WaitPolicy(stream=True))
        assert outcome.succeeded
        assert lines == ["running (0m01s)", "default ✓ [ 100% ]"]
        assert ("stream_logs", "stress-100rps-x7k2p", "k6") in cluster.calls

    def test_pod_never_appears(self, cluster, clock):
        cluster.auto_pods = False
        policy = WaitPolicy(stream=True, pod_start_timeout=5)
        with pytest.raises(ClusterStateError, match="failed to find pod for job stress-100rps"):
            _runner(cluster, clock).run(_descriptor(), policy)

    def test_pod_stuck_pending(self, cluster, clock):
        cluster.pod_phase = "Pending"
        policy = WaitPolicy(stream=True, pod_start_timeout=5)
        with pytest.raises(ClusterStateError, match="did not start"):
            _runner(cluster, clock).run(_descriptor(), policy)

    def test_interrupt_propagates(self, cluster, clock):
        def interrupt(name, namespace):
            raise KeyboardInterrupt

        cluster.job_state = interrupt
        with pytest.raises(KeyboardInterrupt):
            _runner(cluster, clock).run(_descriptor())
        assert ("prod", "stress-100rps") in cluster.jobs


class TestFetchResults:
    def test_summary_and_snapshot(self, cluster, clock):
        runner = _runner(cluster, clock)
        outcome = runner.run(_descriptor())
        cluster.publish_results("stress-100rps", metrics=load_fixture("metrics-snapshot.json"))
        enriched = runner.fetch_results(outcome, "prod")
        assert enriched.summary["metrics"]["http_reqs"]["count"] == 12000
        assert enriched.snapshot.deployments["checkout"][0].cpu_millicores == 250.0
        assert outcome.summary is None

    def test_missing_snapshot_is_not_fatal(self, cluster, clock):
        runner = _runner(cluster, clock)
        outcome = runner.run(_descriptor())
        cluster.publish_results("stress-100rps", metrics="{not json")
        enriched = runner.fetch_results(outcome, "prod")
        assert enriched.summary is not None
        assert enriched.snapshot is None

    def test_missing_configmap(self, cluster, clock):
        runner = _runner(cluster, clock)
        outcome = runner.run(_descriptor())
        with pytest.raises(PersistenceError, match="results config map not found"):
            runner.fetch_results(outcome, "prod")

    def test_unreadable_summary(self, cluster, clock):
        runner = _runner(cluster, clock)
        outcome = runner.run(_descriptor())
        cluster.add_configmap("stress-100rps-results", data={"metrics.json": json.dumps({})})
        with pytest.raises(PersistenceError, match="no readable k6 summary"):
            runner.fetch_results(outcome, "prod")
