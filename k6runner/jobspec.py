"""Build k6 job descriptors from test run specs, and render them as V1Jobs."""

from dataclasses import replace
from typing import Dict, List

from kubernetes import client

from k6runner.config import HarnessConfig
from k6runner.durations import format_seconds, parse_duration
from k6runner.errors import InputError, InvalidSpecError
from k6runner.models import (
    JOB_APP_LABEL,
    TEST_TYPES,
    JobDescriptor,
    TestRunSpec,
    job_name,
)
from k6runner.tiers import resolve_tier

SHARED_DIR = "/shared"

SCRIPT_PATHS = {
    "stress": "/scripts/stress-test.js",
    "spike": "/scripts/v2/scenarios/spike-test.js",
    "soak": "/scripts/v2/scenarios/soak-test.js",
    "load": "/scripts/v2/scenarios/load-test.js",
}

SCENARIO_DEFAULTS = {
    "spike": {"spike_multiplier": 5, "spike_duration": "30s"},
    "load": {"ramp_up_time": "5m", "sustain_time": "10m", "ramp_down_time": "5m"},
    "soak": {},
    "stress": {},
}

SOAK_DEFAULT_DURATION = "30m"

OVERRIDE_KEYS = ("spike_multiplier", "spike_duration", "ramp_up_time",
                 "sustain_time", "ramp_down_time")

# Fixed stages of the spike script around the sustained spike
SPIKE_BASELINE_SECONDS = 60
SPIKE_RAMP_SECONDS = 10
SPIKE_RECOVERY_SECONDS = 30

MIN_TIMEOUT_SECONDS = 600
TIMEOUT_GRACE_SECONDS = 300


def build(spec: TestRunSpec, config: HarnessConfig) -> JobDescriptor:
    """Turn a TestRunSpec into a JobDescriptor. Pure; performs no I/O.

    Raises:
        InvalidSpecError: If the test type is unknown, the rate is not
            positive, or an override is unknown or malformed.
    """
    if spec.test_type not in TEST_TYPES:
        raise InvalidSpecError(
            f"invalid test type: {spec.test_type!r} (must be: {', '.join(TEST_TYPES)})"
        )
    if isinstance(spec.rate, bool) or not isinstance(spec.rate, int) or spec.rate <= 0:
        raise InvalidSpecError(f"rate must be a positive integer, got {spec.rate!r}")

    unknown = sorted(set(spec.overrides) - set(OVERRIDE_KEYS))
    if unknown:
        raise InvalidSpecError(f"unknown override(s): {', '.join(unknown)}")

    params = dict(SCENARIO_DEFAULTS[spec.test_type])
    params.update({k: v for k, v in spec.overrides.items() if v is not None})

    duration = spec.duration
    if duration is None:
        duration = SOAK_DEFAULT_DURATION if spec.test_type == "soak" else config.default_duration

    try:
        expected = _expected_runtime(spec.test_type, duration, params)
    except InputError as exc:
        raise InvalidSpecError(str(exc)) from exc

    name = job_name(spec.test_type, spec.rate)
    namespace = spec.namespace or config.namespace
    labels = {"app": JOB_APP_LABEL, "test-type": spec.test_type, "rps": str(spec.rate)}

    env = {
        "TEST_TYPE": spec.test_type,
        "TARGET_RPS": str(spec.rate),
        "DURATION": duration,
        "BASE_URL": spec.base_url or config.base_url,
        "TEST_SCRIPT": SCRIPT_PATHS[spec.test_type],
        "URL_DATA_PATH": config.url_data_path,
        "APP_LABEL": spec.app_label or config.app_label,
        "NAMESPACE": namespace,
        "JOB_NAME": name,
        "SAVE_RESULTS": "false",
        "SHARED_DIR": SHARED_DIR,
        "EXPECTED_RUNTIME_SECONDS": str(expected),
        "NODEPOOL_LABEL": config.nodepool_label,
    }
    if spec.test_type == "spike":
        env["SPIKE_MULTIPLIER"] = str(params["spike_multiplier"])
        env["SPIKE_DURATION"] = str(params["spike_duration"])
    elif spec.test_type == "load":
        env["RAMP_UP_TIME"] = str(params["ramp_up_time"])
        env["SUSTAIN_TIME"] = str(params["sustain_time"])
        env["RAMP_DOWN_TIME"] = str(params["ramp_down_time"])

    timeout = config.timeouts.job_seconds or max(
        MIN_TIMEOUT_SECONDS, expected + TIMEOUT_GRACE_SECONDS
    )

    return JobDescriptor(
        name=name,
        namespace=namespace,
        test_type=spec.test_type,
        rate=spec.rate,
        tier=resolve_tier(spec.rate),
        env=env,
        script_path=SCRIPT_PATHS[spec.test_type],
        ttl_seconds_after_finished=config.ttl_seconds_after_finished,
        service_account=config.service_account,
        generator_image=config.generator_image,
        collector_image=config.collector_image,
        expected_runtime_seconds=expected,
        timeout_seconds=timeout,
        labels=labels,
        node_selector=dict(config.node_selector),
        tolerations=[dict(t) for t in config.tolerations],
        script_configmap=config.script_configmap,
        data_configmap=config.data_configmap,
    )


def with_save_results(descriptor: JobDescriptor, save: bool) -> JobDescriptor:
    """Return a copy of the descriptor with SAVE_RESULTS set."""
    env = dict(descriptor.env)
    env["SAVE_RESULTS"] = "true" if save else "false"
    return replace(descriptor, env=env)


def _expected_runtime(test_type: str, duration: str, params: dict) -> int:
    if test_type == "spike":
        multiplier = params["spike_multiplier"]
        try:
            multiplier = int(multiplier)
        except (TypeError, ValueError):
            raise InputError(f"spike_multiplier must be an integer, got {multiplier!r}")
        if multiplier <= 0:
            raise InputError(f"spike_multiplier must be positive, got {multiplier}")
        params["spike_multiplier"] = multiplier
        return (SPIKE_BASELINE_SECONDS + SPIKE_RAMP_SECONDS
                + parse_duration(params["spike_duration"])
                + SPIKE_RAMP_SECONDS + SPIKE_RECOVERY_SECONDS)
    if test_type == "load":
        return sum(parse_duration(params[k])
                   for k in ("ramp_up_time", "sustain_time", "ramp_down_time"))
    return parse_duration(duration)


def describe(descriptor: JobDescriptor) -> List[str]:
    """Human readable summary lines for a descriptor."""
    tier = descriptor.tier
    return [
        f"Job: {descriptor.name} (namespace {descriptor.namespace})",
        f"Test type: {descriptor.test_type} @ {descriptor.rate} RPS",
        f"Resource tier: {tier.name} (cpu {tier.cpu_request}/{tier.cpu_limit}, "
        f"memory {tier.memory_request}/{tier.memory_limit})",
        f"Script: {descriptor.script_path}",
        f"Expected runtime: {format_seconds(descriptor.expected_runtime_seconds)} "
        f"(timeout {format_seconds(descriptor.timeout_seconds)})",
    ]


def to_v1_job(descriptor: JobDescriptor) -> client.V1Job:
    """Render a JobDescriptor as a typed Kubernetes Job object."""
    tier = descriptor.tier
    env = [client.V1EnvVar(name=k, value=v) for k, v in descriptor.env.items()]
    shared_mount = client.V1VolumeMount(name="shared", mount_path=SHARED_DIR)

    generator = client.V1Container(
        name="k6",
        image=descriptor.generator_image,
        command=["k6runner", "sidecar", "generator"],
        env=env,
        resources=client.V1ResourceRequirements(
            requests={"cpu": tier.cpu_request, "memory": tier.memory_request},
            limits={"cpu": tier.cpu_limit, "memory": tier.memory_limit},
        ),
        volume_mounts=[
            shared_mount,
            client.V1VolumeMount(name="scripts", mount_path="/scripts"),
            client.V1VolumeMount(name="data", mount_path="/data"),
        ],
    )
    collector = client.V1Container(
        name="metrics-collector",
        image=descriptor.collector_image,
        command=["k6runner", "sidecar", "collector"],
        env=env,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "50m", "memory": "64Mi"},
            limits={"cpu": "200m", "memory": "256Mi"},
        ),
        volume_mounts=[shared_mount],
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=descriptor.name,
            namespace=descriptor.namespace,
            labels=dict(descriptor.labels),
        ),
        spec=client.V1JobSpec(
            ttl_seconds_after_finished=descriptor.ttl_seconds_after_finished,
            backoff_limit=0,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(descriptor.labels)),
                spec=client.V1PodSpec(
                    restart_policy="Never",
                    service_account_name=descriptor.service_account,
                    node_selector=dict(descriptor.node_selector) or None,
                    tolerations=[_toleration(t) for t in descriptor.tolerations] or None,
                    containers=[generator, collector],
                    volumes=[
                        client.V1Volume(
                            name="shared", empty_dir=client.V1EmptyDirVolumeSource()
                        ),
                        client.V1Volume(
                            name="scripts",
                            config_map=client.V1ConfigMapVolumeSource(
                                name=descriptor.script_configmap
                            ),
                        ),
                        client.V1Volume(
                            name="data",
                            config_map=client.V1ConfigMapVolumeSource(
                                name=descriptor.data_configmap
                            ),
                        ),
                    ],
                ),
            ),
        ),
    )


def _toleration(raw: Dict[str, str]) -> client.V1Toleration:
    return client.V1Toleration(
        key=raw.get("key"),
        operator=raw.get("operator", "Equal"),
        value=raw.get("value"),
        effect=raw.get("effect"),
    )
