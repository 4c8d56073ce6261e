"""CLI entry point for deploying, comparing and cleaning up k6 load tests."""

import os
import sys
from datetime import datetime

import click

from k6runner.cleanup import CleanupManager
from k6runner.cluster import load_cluster_client
from k6runner.compare import compare as compare_records
from k6runner.compare import format_table, format_trends, render_report
from k6runner.config import HarnessConfig, load_config
from k6runner.errors import InputError, K6RunnerError
from k6runner.jobspec import build, describe, with_save_results
from k6runner.logs import configure_logging
from k6runner.models import TEST_TYPES, CleanupFilter, JobDescriptor, TestRunSpec, WaitPolicy
from k6runner.orchestrator import JobRunner
from k6runner.results import ResultStore
from k6runner.sidecar import Collector, Generator, SidecarSettings, SignalChannel
from k6runner.suite import SuiteRunner, expand_test_types, parse_rps_levels

TEST_TYPE_CHOICE = click.Choice(TEST_TYPES)


def _config_option(f):
    return click.option(
        "--config",
        "config_path",
        default=None,
        type=click.Path(),
        help="Harness config file (YAML or JSON). Defaults to ./config.yaml when present.",
    )(f)


def _fail(exc) -> None:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


def _setup(ctx: click.Context, config_path) -> HarnessConfig:
    try:
        cfg = load_config(config_path)
    except K6RunnerError as exc:
        _fail(exc)
    level = ctx.obj.get("log_level") or cfg.log_level
    configure_logging(level, cfg.log_json)
    return cfg


def _cluster(ctx: click.Context):
    if ctx.obj.get("cluster") is None:
        ctx.obj["cluster"] = load_cluster_client()
    return ctx.obj["cluster"]


def _now(ctx: click.Context) -> datetime:
    return ctx.obj.get("now", datetime.now)()


def _policy(cfg: HarnessConfig, stream: bool) -> WaitPolicy:
    return WaitPolicy(
        stream=stream,
        poll_interval=cfg.timeouts.poll_interval_seconds,
        pod_start_timeout=cfg.timeouts.pod_start_seconds,
    )


def _execute(runner: JobRunner, store: ResultStore, descriptor: JobDescriptor,
             policy: WaitPolicy, save_results: bool) -> bool:
    """Run one job to completion and optionally persist its result."""
    outcome = runner.run(descriptor, policy)
    click.echo("")
    if not outcome.succeeded:
        click.echo(f"❌ Test {descriptor.name} did not complete: {outcome.terminal_state}")
        return False
    click.echo(f"✅ Test {descriptor.name} completed successfully!")
    if save_results:
        outcome = runner.fetch_results(outcome, descriptor.namespace)
        record = store.save(outcome)
        if outcome.snapshot is None:
            click.echo("Resource metrics unavailable for this run.")
        click.echo(f"Results saved to {record.path}")
    return True


@click.group()
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Override the configured log level.",
)
@click.pass_context
def main(ctx, log_level):
    """k6runner -- deploy k6 load tests on Kubernetes and track their results."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@main.command()
@click.option("--type", "test_type", required=True, type=TEST_TYPE_CHOICE, help="Test type.")
@click.option("--rps", required=True, type=int, help="Target requests per second.")
@click.option("--duration", default=None, help="Test duration, e.g. 2m (default from config).")
@click.option("--namespace", default=None, help="Kubernetes namespace (default from config).")
@click.option("--app-label", default=None, help="Application label for metrics discovery.")
@click.option("--base-url", default=None, help="Target base URL.")
@click.option("--spike-multiplier", default=None, type=int, help="Spike test: multiplier.")
@click.option("--spike-duration", default=None, help="Spike test: sustained spike duration.")
@click.option("--ramp-up", default=None, help="Load test: ramp-up time.")
@click.option("--sustain", default=None, help="Load test: sustain time.")
@click.option("--ramp-down", default=None, help="Load test: ramp-down time.")
@click.option("--wait", is_flag=True, help="Stream logs and wait for completion.")
@click.option("--save-results", is_flag=True, help="Save the run's result file (requires --wait).")
@_config_option
@click.pass_context
def deploy(ctx, test_type, rps, duration, namespace, app_label, base_url, spike_multiplier,
           spike_duration, ramp_up, sustain, ramp_down, wait, save_results, config_path):
    """Deploy a single k6 load test job."""
    cfg = _setup(ctx, config_path)
    overrides = {
        "spike_multiplier": spike_multiplier,
        "spike_duration": spike_duration,
        "ramp_up_time": ramp_up,
        "sustain_time": sustain,
        "ramp_down_time": ramp_down,
    }
    spec = TestRunSpec(
        test_type=test_type,
        rate=rps,
        duration=duration,
        overrides={k: v for k, v in overrides.items() if v is not None},
        namespace=namespace,
        base_url=base_url,
        app_label=app_label,
    )
    try:
        descriptor = with_save_results(build(spec, cfg), save_results)
    except InputError as exc:
        _fail(exc)

    for line in describe(descriptor):
        click.echo(line)
    click.echo("")

    try:
        runner = JobRunner(_cluster(ctx), delete_timeout=cfg.timeouts.delete_seconds)
        if not wait:
            runner.submit(descriptor)
            click.echo("Job deployed. Monitor it with:")
            click.echo(f"  kubectl get pods -n {descriptor.namespace} -l {descriptor.selector}")
            click.echo(f"  kubectl logs -f <POD_NAME> -n {descriptor.namespace} -c k6")
            click.echo(f"  kubectl get job {descriptor.name} -n {descriptor.namespace}")
            if save_results:
                click.echo(
                    f"Results will be published to config map {descriptor.results_configmap}; "
                    "use --wait to save them locally."
                )
            return
        ok = _execute(runner, ResultStore(cfg.results_dir), descriptor,
                      _policy(cfg, stream=True), save_results)
    except K6RunnerError as exc:
        _fail(exc)
    if not ok:
        sys.exit(1)


@main.command()
@click.option("--all", "all_", is_flag=True, help="Delete all k6 resources (jobs, config maps, RBAC).")
@click.option("--jobs", "mode_jobs", is_flag=True, help="Delete k6 jobs.")
@click.option("--completed", is_flag=True, help="Delete only completed jobs.")
@click.option("--failed", is_flag=True, help="Delete only failed jobs.")
@click.option("--older-than", default=None, help="Only jobs older than this (e.g. 1h, 2d, 30m).")
@click.option("--type", "test_type", default=None, type=TEST_TYPE_CHOICE, help="Only this test type.")
@click.option("--rps", default=None, type=int, help="Only this RPS level.")
@click.option("--namespace", default=None, help="Kubernetes namespace (default from config).")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted without deleting.")
@click.option("--preserve-results", is_flag=True, help="Keep config maps, including results.")
@_config_option
@click.pass_context
def cleanup(ctx, all_, mode_jobs, completed, failed, older_than, test_type, rps,
            namespace, dry_run, preserve_results, config_path):
    """Clean up k6 test resources from the cluster."""
    modes = [m for m, on in (("all", all_), ("jobs", mode_jobs),
                             ("completed", completed), ("failed", failed)) if on]
    if not modes:
        click.echo(ctx.get_help())
        return
    if len(modes) > 1:
        _fail(f"choose only one of --all, --jobs, --completed, --failed (got {', '.join(modes)})")

    cfg = _setup(ctx, config_path)
    flt = CleanupFilter(
        mode=modes[0],
        older_than=older_than,
        test_type=test_type,
        rate=rps,
        preserve_results=preserve_results,
    )
    ns = namespace or cfg.namespace
    click.echo(f"Namespace: {ns}")
    if dry_run:
        click.echo("DRY RUN MODE - No resources will be deleted")

    try:
        manager = CleanupManager(_cluster(ctx), ns)
        removed = manager.clean(flt, dry_run=dry_run)
    except K6RunnerError as exc:
        _fail(exc)

    if not removed:
        click.echo("No matching resources found")
        return
    prefix = "[DRY RUN] Would delete" if dry_run else "Deleted"
    for ident in removed:
        click.echo(f"{prefix}: {ident}")
    click.echo("")
    click.echo("✅ Cleanup complete!")


@main.command()
@click.option("--type", "test_type", required=True, type=TEST_TYPE_CHOICE, help="Test type.")
@click.option("--rps", required=True, type=int, help="RPS level to compare.")
@click.option("--last", default=5, show_default=True, type=click.IntRange(min=1),
              help="Compare the last N runs.")
@_config_option
@click.pass_context
def compare(ctx, test_type, rps, last, config_path):
    """Compare saved results across recent runs."""
    cfg = _setup(ctx, config_path)
    try:
        records = ResultStore(cfg.results_dir).load(test_type, rps, last)
    except K6RunnerError as exc:
        click.echo("Run tests with --save-results to generate results", err=True)
        _fail(exc)

    click.echo(f"Found {len(records)} result file(s)")
    click.echo("")
    click.echo(format_table(records))
    click.echo("")
    click.echo("Performance Trends")
    click.echo(format_trends(compare_records(records)))


@main.command()
@click.option("--type", "test_type", required=True, type=TEST_TYPE_CHOICE, help="Test type.")
@click.option("--rps", required=True, type=int, help="RPS level.")
@click.option("--last", default=10, show_default=True, type=click.IntRange(min=1),
              help="Include the last N runs.")
@click.option("--output", default=None, type=click.Path(),
              help="Output file (default: <reports dir>/<type>-<rps>rps-<date>.md).")
@_config_option
@click.pass_context
def report(ctx, test_type, rps, last, output, config_path):
    """Generate a Markdown report from saved results."""
    cfg = _setup(ctx, config_path)
    try:
        records = ResultStore(cfg.results_dir).load(test_type, rps, last)
    except K6RunnerError as exc:
        _fail(exc)

    generated_at = _now(ctx)
    if output is None:
        output = os.path.join(
            cfg.reports_dir, f"{test_type}-{rps}rps-{generated_at.strftime('%Y-%m-%d')}.md"
        )
    parent = os.path.dirname(output)
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, exist_ok=True)
    with open(output, "w") as f:
        f.write(render_report(records, test_type, rps, generated_at))
    click.echo(f"✅ Report generated: {output}")


@main.command("run-suite")
@click.option("--type", "test_type", default="stress", show_default=True,
              type=click.Choice(TEST_TYPES + ("all",)), help="Test type to run.")
@click.option("--rps-levels", default=None, help='RPS levels, e.g. "10 50 100" (default from config).')
@click.option("--duration", default=None, help="Override the test duration.")
@click.option("--delay", default=None, type=click.IntRange(min=0),
              help="Seconds between runs (default from config).")
@click.option("--namespace", default=None, help="Kubernetes namespace (default from config).")
@click.option("--parallel", is_flag=True, help="Submit all runs without waiting (experimental).")
@click.option("--save-results", is_flag=True, help="Save a result file for each completed run.")
@_config_option
@click.pass_context
def run_suite(ctx, test_type, rps_levels, duration, delay, namespace, parallel,
              save_results, config_path):
    """Run a suite of load tests across test types and RPS levels."""
    cfg = _setup(ctx, config_path)
    try:
        types = expand_test_types(test_type)
        levels = parse_rps_levels(rps_levels) if rps_levels else list(cfg.rps_levels)
    except InputError as exc:
        _fail(exc)
    delay = cfg.delay_seconds if delay is None else delay

    click.echo(f"Test types: {' '.join(types)}")
    click.echo(f"RPS levels: {' '.join(str(r) for r in levels)}")
    click.echo(f"Delay between tests: {delay}s")
    click.echo("")

    store = ResultStore(cfg.results_dir)

    def execute(kind: str, rate: int, wait: bool) -> bool:
        spec = TestRunSpec(test_type=kind, rate=rate, duration=duration, namespace=namespace)
        descriptor = with_save_results(build(spec, cfg), save_results)
        runner = JobRunner(_cluster(ctx), delete_timeout=cfg.timeouts.delete_seconds)
        if not wait:
            runner.submit(descriptor)
            return True
        return _execute(runner, store, descriptor, _policy(cfg, stream=True), save_results)

    started = datetime.now()
    try:
        result = SuiteRunner(execute, delay=delay, parallel=parallel).run_suite(types, levels)
    except K6RunnerError as exc:
        _fail(exc)
    elapsed = int((datetime.now() - started).total_seconds())

    click.echo("Test Suite Complete")
    click.echo(f"Total tests: {result.total}")
    click.echo(f"Passed: {result.passed}")
    click.echo(f"Failed: {result.failed}")
    click.echo(f"Duration: {elapsed // 60}m {elapsed % 60}s")
    if not result.ok:
        click.echo("Failed tests:")
        for key in result.failed_keys:
            click.echo(f"  - {key}")
        click.echo("❌ Test suite completed with failures")
        sys.exit(1)
    click.echo("✅ All tests passed successfully!")


@main.command("prune-results")
@click.option("--type", "test_type", required=True, type=TEST_TYPE_CHOICE, help="Test type.")
@click.option("--rps", required=True, type=int, help="RPS level.")
@click.option("--keep", default=None, type=click.IntRange(min=0),
              help="Records to keep (default: results.retention from config).")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted without deleting.")
@_config_option
@click.pass_context
def prune_results(ctx, test_type, rps, keep, dry_run, config_path):
    """Delete old result files beyond the retention count."""
    cfg = _setup(ctx, config_path)
    keep = cfg.retention if keep is None else keep
    removed = ResultStore(cfg.results_dir).prune(test_type, rps, keep, dry_run=dry_run)
    if not removed:
        click.echo(f"Nothing to prune (keeping {keep})")
        return
    prefix = "[DRY RUN] Would delete" if dry_run else "Deleted"
    for path in removed:
        click.echo(f"{prefix}: {path}")


@main.group()
def sidecar():
    """In-job processes: the k6 generator and the metrics collector."""


@sidecar.command()
@click.pass_context
def generator(ctx):
    """Discover targets, run k6 and coordinate with the collector."""
    settings = SidecarSettings.from_env()
    configure_logging(ctx.obj.get("log_level") or "info", json_output=True)
    channel = SignalChannel(settings.shared_dir)
    try:
        code = Generator(settings, _cluster(ctx), channel).run()
    except K6RunnerError as exc:
        _fail(exc)
    sys.exit(code)


@sidecar.command()
@click.pass_context
def collector(ctx):
    """Wait for the collection signal and snapshot resource usage."""
    settings = SidecarSettings.from_env()
    configure_logging(ctx.obj.get("log_level") or "info", json_output=True)
    channel = SignalChannel(settings.shared_dir)
    try:
        code = Collector(settings, _cluster(ctx), channel).run()
    except K6RunnerError as exc:
        _fail(exc)
    sys.exit(code)


if __name__ == "__main__":
    main()
