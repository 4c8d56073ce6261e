"""Load and validate the harness configuration file (YAML or JSON)."""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from k6runner.errors import ConfigValidationError

DEFAULT_CONFIG_FILE = "config.yaml"

DEFAULT_RPS_LEVELS = [5, 10, 50, 100, 150, 200, 300, 400, 500, 750, 1000, 1500]


@dataclass
class TimeoutSettings:
    job_seconds: Optional[int] = None  # derived from the scenario when unset
    pod_start_seconds: int = 60
    delete_seconds: int = 120
    poll_interval_seconds: float = 5.0


@dataclass
class HarnessConfig:
    namespace: str = "prod"
    app_label: str = "my-app"
    base_url: str = "http://ingress-nginx-controller.ingress-nginx.svc.cluster.local"
    default_duration: str = "2m"
    generator_image: str = "ghcr.io/k6runner/generator:latest"
    collector_image: str = "ghcr.io/k6runner/collector:latest"
    service_account: str = "k6-test-runner"
    node_selector: Dict[str, str] = field(default_factory=lambda: {"workload": "k6"})
    tolerations: List[Dict[str, str]] = field(default_factory=lambda: [
        {"key": "workload", "operator": "Equal", "value": "k6", "effect": "NoSchedule"},
    ])
    ttl_seconds_after_finished: int = 600
    url_data_path: str = "/data/urls-1.json"
    script_configmap: str = "k6-scripts-v2"
    data_configmap: str = "k6-urls-data"
    nodepool_label: str = "karpenter.sh/nodepool"
    rps_levels: List[int] = field(default_factory=lambda: list(DEFAULT_RPS_LEVELS))
    delay_seconds: int = 30
    results_dir: str = "results"
    retention: int = 10
    reports_dir: str = "reports"
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    log_level: str = "info"
    log_json: bool = False


def load_config(path: Optional[str] = None) -> HarnessConfig:
    """Load a harness configuration.

    When ``path`` is omitted, ``config.yaml`` in the working directory is
    used if present; otherwise the built-in defaults are returned.

    Raises:
        ConfigValidationError: If the file is missing, unparseable or invalid.
    """
    if path is None:
        if not os.path.isfile(DEFAULT_CONFIG_FILE):
            return HarnessConfig()
        path = DEFAULT_CONFIG_FILE

    if not os.path.isfile(path):
        raise ConfigValidationError(f"config file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r") as f:
            if ext in (".yaml", ".yml"):
                raw = yaml.safe_load(f)
            elif ext == ".json":
                raw = json.load(f)
            else:
                raise ConfigValidationError(
                    f"unsupported file extension: {ext} (expected .yaml, .yml, or .json)"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigValidationError(f"failed to parse {path}: {exc}") from exc

    if raw is None:
        return HarnessConfig()
    if not isinstance(raw, dict):
        raise ConfigValidationError("config must be a mapping/object at the top level")

    return _build_config(raw)


def _build_config(raw: dict) -> HarnessConfig:
    errors: List[str] = []
    cfg = HarnessConfig()

    for key in ("namespace", "app_label", "base_url", "default_duration",
                "service_account", "url_data_path", "script_configmap",
                "data_configmap", "nodepool_label"):
        if key in raw:
            value = raw[key]
            if not isinstance(value, str) or not value:
                errors.append(f"'{key}' must be a non-empty string")
            else:
                setattr(cfg, key, value)

    images = raw.get("images", {})
    if not isinstance(images, dict):
        errors.append("'images' must be a mapping")
    else:
        cfg.generator_image = str(images.get("generator", cfg.generator_image))
        cfg.collector_image = str(images.get("collector", cfg.collector_image))

    if "node_selector" in raw:
        if not isinstance(raw["node_selector"], dict):
            errors.append("'node_selector' must be a mapping")
        else:
            cfg.node_selector = {str(k): str(v) for k, v in raw["node_selector"].items()}

    if "tolerations" in raw:
        tolerations = raw["tolerations"]
        if not isinstance(tolerations, list) or not all(isinstance(t, dict) for t in tolerations):
            errors.append("'tolerations' must be a list of mappings")
        else:
            cfg.tolerations = [{str(k): str(v) for k, v in t.items()} for t in tolerations]

    cfg.ttl_seconds_after_finished = _int(
        raw, "ttl_seconds_after_finished", cfg.ttl_seconds_after_finished, errors
    )

    test = _section(raw, "test", errors)
    if "rps_levels" in test:
        levels = test["rps_levels"]
        if (not isinstance(levels, list) or not levels
                or not all(isinstance(r, int) and not isinstance(r, bool) and r > 0 for r in levels)):
            errors.append("'test.rps_levels' must be a non-empty list of positive integers")
        else:
            cfg.rps_levels = list(levels)
    cfg.delay_seconds = _int(test, "delay_seconds", cfg.delay_seconds, errors, "test.")

    results = _section(raw, "results", errors)
    cfg.results_dir = str(results.get("dir", cfg.results_dir))
    cfg.retention = _int(results, "retention", cfg.retention, errors, "results.")

    reports = _section(raw, "reports", errors)
    cfg.reports_dir = str(reports.get("dir", cfg.reports_dir))

    timeouts = _section(raw, "timeouts", errors)
    job_seconds = timeouts.get("job_seconds")
    if job_seconds is not None:
        cfg.timeouts.job_seconds = _int(timeouts, "job_seconds", 0, errors, "timeouts.")
    cfg.timeouts.pod_start_seconds = _int(
        timeouts, "pod_start_seconds", cfg.timeouts.pod_start_seconds, errors, "timeouts."
    )
    cfg.timeouts.delete_seconds = _int(
        timeouts, "delete_seconds", cfg.timeouts.delete_seconds, errors, "timeouts."
    )
    interval = timeouts.get("poll_interval_seconds", cfg.timeouts.poll_interval_seconds)
    if not isinstance(interval, (int, float)) or interval <= 0:
        errors.append("'timeouts.poll_interval_seconds' must be a positive number")
    else:
        cfg.timeouts.poll_interval_seconds = float(interval)

    logging_raw = _section(raw, "logging", errors)
    cfg.log_level = str(logging_raw.get("level", cfg.log_level)).lower()
    if cfg.log_level not in ("debug", "info", "warning", "error"):
        errors.append("'logging.level' must be one of debug, info, warning, error")
    cfg.log_json = bool(logging_raw.get("json", cfg.log_json))

    if errors:
        raise ConfigValidationError(
            "config validation failed:\n  - " + "\n  - ".join(errors)
        )
    return cfg


def _section(raw: dict, key: str, errors: List[str]) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"'{key}' must be a mapping")
        return {}
    return value


def _int(raw: dict, key: str, default: int, errors: List[str], prefix: str = "") -> int:
    if key not in raw:
        return default
    value = raw[key]
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        errors.append(f"'{prefix}{key}' must be a non-negative integer")
        return default
    return value
