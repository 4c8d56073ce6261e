"""Tests for the Kubernetes client boundary."""

from datetime import datetime, timezone
from unittest import mock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

from k6runner.cluster import ClusterClient, job_state, parse_cpu, parse_memory, selector_from
from k6runner.errors import ClusterStateError, MetricsUnavailableError
from k6runner.config import HarnessConfig
from k6runner.jobspec import build
from k6runner.models import COMPLETE, FAILED, TestRunSpec, WaitPolicy
from k6runner.orchestrator import JobRunner

from conftest import FakeClock


def _status(*conditions, active=None):
    return client.V1JobStatus(
        active=active,
        conditions=[client.V1JobCondition(type=t, status=s) for t, s in conditions] or None,
    )


@pytest.fixture
def api():
    cc = ClusterClient(client.ApiClient())
    cc.batch = mock.MagicMock()
    cc.core = mock.MagicMock()
    cc.apps = mock.MagicMock()
    cc.rbac = mock.MagicMock()
    cc.custom = mock.MagicMock()
    return cc


class TestJobState:
    def test_running(self):
        assert job_state(_status(active=1)) is None
        assert job_state(None) is None

    def test_complete(self):
        assert job_state(_status(("Complete", "True"))) == COMPLETE

    def test_failed(self):
        assert job_state(_status(("Failed", "True"))) == FAILED

    def test_false_conditions_ignored(self):
        assert job_state(_status(("Failed", "False"))) is None


class TestQuantities:
    @pytest.mark.parametrize("value,expected", [
        ("250m", 250.0),
        ("2", 2000.0),
        ("500000000n", 500.0),
        ("1500u", 1.5),
    ])
    def test_cpu(self, value, expected):
        assert parse_cpu(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value,expected", [
        ("512Mi", 512.0),
        ("1048576Ki", 1024.0),
        ("1Gi", 1024.0),
        ("1048576", 1.0),
    ])
    def test_memory(self, value, expected):
        assert parse_memory(value) == pytest.approx(expected)

    def test_memory_bad_unit(self):
        with pytest.raises(ValueError):
            parse_memory("12Qi")

    def test_selector_is_sorted(self):
        assert selector_from({"tier": "web", "app": "checkout"}) == "app=checkout,tier=web"


class TestClusterClient:
    def test_job_exists(self, api):
        assert api.job_exists("stress-100rps", "prod")
        api.batch.read_namespaced_job.side_effect = ApiException(status=404, reason="Not Found")
        assert not api.job_exists("stress-100rps", "prod")

    def test_read_error(self, api):
        api.batch.read_namespaced_job.side_effect = ApiException(status=500, reason="Boom")
        with pytest.raises(ClusterStateError) as exc_info:
            api.job_exists("stress-100rps", "prod")
        assert exc_info.value.status == 500

    def test_delete_missing_job_is_fine(self, api):
        api.batch.delete_namespaced_job.side_effect = ApiException(status=404, reason="Not Found")
        api.delete_job("stress-100rps", "prod")
        body = api.batch.delete_namespaced_job.call_args.kwargs["body"]
        assert body.propagation_policy == "Foreground"

    def test_list_jobs(self, api):
        created = datetime(2024, 5, 1, tzinfo=timezone.utc)
        api.batch.list_namespaced_job.return_value = client.V1JobList(items=[
            client.V1Job(
                metadata=client.V1ObjectMeta(name="stress-100rps", creation_timestamp=created,
                                             labels={"app": "k6-load-test"}),
                status=_status(active=1),
            ),
            client.V1Job(
                metadata=client.V1ObjectMeta(name="spike-10rps", creation_timestamp=created),
                status=_status(("Complete", "True")),
            ),
        ])
        jobs = api.list_jobs("prod", "app=k6-load-test")
        assert [(j.name, j.state) for j in jobs] == [("stress-100rps", "Active"),
                                                     ("spike-10rps", COMPLETE)]
        assert jobs[0].created_at == created

    def test_apply_configmap_replaces_on_conflict(self, api):
        api.core.create_namespaced_config_map.side_effect = ApiException(status=409,
                                                                         reason="Conflict")
        api.apply_configmap("stress-100rps-results", "prod", {"summary.json": "{}"})
        api.core.replace_namespaced_config_map.assert_called_once()

    def test_read_missing_configmap(self, api):
        api.core.read_namespaced_config_map.side_effect = ApiException(status=404,
                                                                       reason="Not Found")
        assert api.read_configmap("stress-100rps-results", "prod") is None

    def test_delete_rbac_kinds(self, api):
        api.delete_rbac("clusterrole", "k6-node-metrics-reader", "prod")
        api.rbac.delete_cluster_role.assert_called_once_with("k6-node-metrics-reader")
        with pytest.raises(ValueError):
            api.delete_rbac("secret", "x", "prod")

    def test_pod_usage(self, api):
        api.custom.list_namespaced_custom_object.return_value = {"items": [{
            "metadata": {"name": "checkout-abc"},
            "containers": [
                {"usage": {"cpu": "200m", "memory": "256Mi"}},
                {"usage": {"cpu": "50m", "memory": "64Mi"}},
            ],
        }]}
        samples = api.pod_usage("prod", "app=checkout")
        assert samples[0].name == "checkout-abc"
        assert samples[0].cpu_millicores == pytest.approx(250.0)
        assert samples[0].memory_mib == pytest.approx(320.0)

    def test_metrics_api_missing(self, api):
        api.custom.get_cluster_custom_object.side_effect = ApiException(
            status=404, reason="Not Found")
        with pytest.raises(MetricsUnavailableError):
            api.node_usage("ip-10-0-1-12")


def _unreachable():
    return MaxRetryError(None, "/apis/batch/v1/namespaces/prod/jobs/stress-100rps",
                         reason=ConnectionRefusedError(111, "Connection refused"))


class TestTransportErrors:
    def test_max_retry_becomes_cluster_error(self, api):
        api.batch.read_namespaced_job_status.side_effect = _unreachable()
        with pytest.raises(ClusterStateError, match="reading status of job stress-100rps"):
            api.job_state("stress-100rps", "prod")

    @pytest.mark.parametrize("call", [
        lambda cc: cc.job_exists("stress-100rps", "prod"),
        lambda cc: cc.delete_job("stress-100rps", "prod"),
        lambda cc: cc.list_jobs("prod", "app=k6-load-test"),
        lambda cc: cc.list_pods("prod", "job-name=stress-100rps"),
        lambda cc: cc.read_configmap("stress-100rps-results", "prod"),
        lambda cc: cc.delete_configmap("stress-100rps-results", "prod"),
        lambda cc: cc.list_deployments("prod"),
        lambda cc: cc.list_nodes(),
    ])
    def test_every_call_maps_connection_errors(self, api, call):
        for mocked in (api.batch, api.core, api.apps):
            for method in ("read_namespaced_job", "delete_namespaced_job",
                           "list_namespaced_job", "list_namespaced_pod",
                           "read_namespaced_config_map", "delete_namespaced_config_map",
                           "list_namespaced_deployment", "list_node"):
                getattr(mocked, method).side_effect = ConnectionResetError(104, "reset")
        with pytest.raises(ClusterStateError):
            call(api)

    def test_log_stream_dropped(self, api):
        with mock.patch("k6runner.cluster.watch.Watch") as watch_cls:
            watch_cls.return_value.stream.side_effect = ProtocolError("Connection broken")
            with pytest.raises(ClusterStateError, match="streaming logs of pod stress-100rps-x7k2p"):
                list(api.stream_logs("stress-100rps-x7k2p", "prod", "k6"))
            watch_cls.return_value.stop.assert_called_once()

    def test_metrics_connection_error(self, api):
        api.custom.list_namespaced_custom_object.side_effect = _unreachable()
        with pytest.raises(MetricsUnavailableError):
            api.pod_usage("prod", "app=checkout")

    def test_runner_retries_after_connection_error(self, api):
        api.batch.read_namespaced_job.side_effect = ApiException(status=404, reason="Not Found")
        api.core.read_namespaced_config_map.side_effect = ApiException(status=404,
                                                                       reason="Not Found")
        done = client.V1Job(status=_status(("Complete", "True")))
        api.batch.read_namespaced_job_status.side_effect = [_unreachable(), done]
        clock = FakeClock()
        descriptor = build(TestRunSpec(test_type="stress", rate=100, duration="2m"),
                           HarnessConfig())

        runner = JobRunner(api, clock=clock, sleep=clock.sleep)
        outcome = runner.run(descriptor, WaitPolicy(poll_interval=1))
        assert outcome.terminal_state == COMPLETE
        assert api.batch.read_namespaced_job_status.call_count == 2
        api.batch.create_namespaced_job.assert_called_once()


class TestMetricsParsing:
    def test_bad_pod_quantity_is_unavailable(self, api):
        api.custom.list_namespaced_custom_object.return_value = {"items": [{
            "metadata": {"name": "checkout-abc"},
            "containers": [{"usage": {"cpu": "200m", "memory": "12Qi"}}],
        }]}
        with pytest.raises(MetricsUnavailableError, match="unreadable pod metrics"):
            api.pod_usage("prod", "app=checkout")

    def test_bad_node_quantity_is_unavailable(self, api):
        api.custom.get_cluster_custom_object.return_value = {"usage": {"cpu": "lots"}}
        with pytest.raises(MetricsUnavailableError, match="ip-10-0-1-12"):
            api.node_usage("ip-10-0-1-12")
