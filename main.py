import argparse
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table

from srebench.conductor.conductor_api import request_shutdown, start_api_thread
from srebench.conductor.constants import EXIT_CODES, EXIT_INVALID, State
from srebench.conductor.engine import ScenarioEngine, new_run_id
from srebench.conductor.result_store import ResultStore
from srebench.conductor.scenarios.registry import ScenarioRegistry
from srebench.config import get_settings
from srebench.errors import ScenarioNotFoundError, ScenarioValidationError
from srebench.service.cluster import ClusterConfig
from srebench.utils.durations import format_duration, parse_duration
from srebench.utils.logger import init_logger
from srebench.utils.sigint_aware_section import CancellationToken, SigintAwareSection

logger = logging.getLogger("all.srebench.cli")

OUTCOME_STYLES = {
    State.RECOVERED.value: "bold green",
    State.TIMED_OUT.value: "bold yellow",
    State.FAILED.value: "bold red",
}


class ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with the invalid-invocation code instead of argparse's 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID, f"{self.prog}: error: {message}\n")


def get_current_datetime_formatted():
    return datetime.now().strftime("%m-%d_%H-%M")


def _duration_arg(text: str) -> float:
    try:
        seconds = parse_duration(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"duration must be positive: {text!r}")
    return seconds


def _param_arg(text: str) -> tuple[str, object]:
    key, sep, raw = text.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"expected key=value, got {text!r}")
    try:
        value = yaml.safe_load(raw) if raw else ""
    except yaml.YAMLError as e:
        raise argparse.ArgumentTypeError(f"cannot parse value of {key}: {e}") from e
    return key.strip(), value


def _add_cluster_args(parser):
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--cluster", help="Existing cluster (kubeconfig context NAME or kind-NAME)")
    target.add_argument("--kubeconfig", help="Kubeconfig file of an existing cluster")
    target.add_argument(
        "--ephemeral", action="store_true", help="Create a disposable kind cluster for each run and delete it after"
    )
    parser.add_argument("--context", help="Kubeconfig context to use")
    parser.add_argument("--keep-cluster", action="store_true", help="Do not delete the ephemeral cluster")
    parser.add_argument("--remediate", action="store_true", help="Run the scenario's reference remediation")
    parser.add_argument("--results-dir", type=Path, help="Where traces and results.jsonl are written")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="srebench", description="Run declarative Kubernetes incident scenarios")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one scenario")
    run.add_argument("scenario", help="Scenario id from the catalog, or a path to a scenario file")
    _add_cluster_args(run)
    run.add_argument("--timeout", type=_duration_arg, help="Override the scenario timeout (90, 90s, 5m, 1h30m)")
    run.add_argument("--json", action="store_true", help="Print the ScoreReport as JSON on stdout")
    run.add_argument("--output", type=Path, help="Write the ScoreReport JSON to FILE")
    run.add_argument(
        "--param", type=_param_arg, action="append", default=[], metavar="KEY=VALUE", help="Override a parameter"
    )
    run.add_argument("--api", action="store_true", help="Serve the conductor API while the run is in progress")

    sub.add_parser("list", help="List available scenarios").add_argument("--json", action="store_true")

    batch = sub.add_parser("batch", help="Run several scenarios")
    batch.add_argument("scenarios", nargs="+", help="Scenario ids or files")
    _add_cluster_args(batch)
    batch.add_argument("--parallel", type=int, default=1, help="Scenarios run at the same time")

    export = sub.add_parser("export", help="Export stored results")
    export.add_argument("--csv", type=Path, required=True, help="CSV file to write")
    export.add_argument("--results-dir", type=Path, help="Directory holding results.jsonl")
    return parser


def cluster_config(args, settings, scenario_id: str, run_id: str) -> ClusterConfig:
    kw = {
        "probe_timeout": settings.probe_timeout,
        "probe_attempts": settings.probe_attempts,
        "request_timeout": settings.request_timeout,
        "keep": args.keep_cluster,
    }
    if args.ephemeral:
        return ClusterConfig.disposable(f"srebench-{scenario_id}", run_id=run_id, **kw)
    return ClusterConfig.existing(args.cluster, args.kubeconfig, args.context, **kw)


def exit_code(report) -> int:
    return EXIT_CODES.get(State(report.outcome), EXIT_CODES[State.FAILED])


def print_summary(console: Console, report, trace_path=None):
    style = OUTCOME_STYLES.get(report.outcome, "bold")
    console.rule(f"[{style}]{report.scenario_id}: {report.outcome}")

    table = Table(title=f"run {report.run_id}", show_lines=False)
    table.add_column("State")
    table.add_column("From")
    table.add_column("Reason")
    for t in report.transitions:
        table.add_row(t.get("to") or "", t.get("from") or "", t.get("reason") or "")
    console.print(table)

    ttd = format_duration(report.time_to_detect)
    ttr = format_duration(report.time_to_recover)
    console.print(f"time to detect: [bold]{ttd}[/]    time to recover: [bold]{ttr}[/]")

    if report.failure:
        where = f" at step {report.failure.step}" if report.failure.step else ""
        console.print(f"[bold red]Failed in {report.failure.state}{where}:[/] {report.failure.reason}")
    for d in report.deviations:
        if d.kind == "failure":
            continue
        observed = f" (observed {d.observed!r})" if d.observed is not None else ""
        console.print(f"  [yellow]{d.status or '-'}[/] {d.description}{observed}")
    if trace_path:
        console.print(f"trace: {trace_path}")


def run_scenario(definition, args, settings, cancel, store, api: bool = False):
    run_id = new_run_id()
    engine = ScenarioEngine(
        definition,
        cluster_config(args, settings, definition.id, run_id),
        settings=settings,
        cancel=cancel,
        store=store,
        remediate=args.remediate,
        run_id=run_id,
    )
    if api:
        start_api_thread(engine, settings.api_hostname, settings.api_port)
    try:
        report = engine.run()
    finally:
        if api:
            request_shutdown()
    return engine, report


def cmd_run(args, settings, console) -> int:
    registry = ScenarioRegistry()
    definition = registry.get(args.scenario, params=dict(args.param))
    if args.timeout:
        definition = definition.model_copy(update={"timeout": args.timeout})

    store = ResultStore(settings.results_dir)
    cancel = CancellationToken()
    with SigintAwareSection(cancel):
        engine, report = run_scenario(definition, args, settings, cancel, store, api=args.api)

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(report.to_json())
    if args.json:
        print(report.to_json())
    print_summary(console, report, engine.trace_path)
    return exit_code(report)


def cmd_list(args, settings, console) -> int:
    entries = ScenarioRegistry().list()
    if args.json:
        print(json.dumps([{"id": e.id, "title": e.title, "tags": e.tags, "path": str(e.path)} for e in entries]))
        return 0
    table = Table(title="Scenarios")
    table.add_column("ID", style="bold")
    table.add_column("Title")
    table.add_column("Tags")
    table.add_column("Source")
    for e in entries:
        table.add_row(e.id, e.title, ", ".join(e.tags), "built-in" if e.builtin else str(e.path))
    console.print(table)
    return 0


def cmd_batch(args, settings, console) -> int:
    if args.parallel < 1:
        raise ScenarioValidationError("--parallel must be at least 1")
    if args.parallel > 1 and not args.ephemeral:
        logger.info("Parallel runs share the cluster; each one gets its own namespace")

    registry = ScenarioRegistry()
    # validate every scenario before touching a cluster
    definitions = [registry.get(ref) for ref in args.scenarios]
    store = ResultStore(settings.results_dir)
    cancel = CancellationToken()

    reports = []
    with SigintAwareSection(cancel):
        with ThreadPoolExecutor(max_workers=args.parallel, thread_name_prefix="srebench-batch") as pool:
            futures = [pool.submit(run_scenario, d, args, settings, cancel, store) for d in definitions]
            for future in futures:
                engine, report = future.result()
                reports.append(report)
                print_summary(console, report, engine.trace_path)

    table = Table(title=f"Batch {get_current_datetime_formatted()}")
    table.add_column("Scenario", style="bold")
    table.add_column("Run")
    table.add_column("Outcome")
    table.add_column("TTD")
    table.add_column("TTR")
    for r in reports:
        table.add_row(
            r.scenario_id,
            r.run_id,
            f"[{OUTCOME_STYLES.get(r.outcome, 'bold')}]{r.outcome}[/]",
            format_duration(r.time_to_detect),
            format_duration(r.time_to_recover),
        )
    console.print(table)
    console.print(f"Results appended to {store.path}")
    return max(exit_code(r) for r in reports)


def cmd_export(args, settings, console) -> int:
    store = ResultStore(settings.results_dir)
    count = store.export_csv(args.csv)
    if count == 0:
        console.print(f"⚠️ No results found in {store.path}")
    else:
        console.print(f"✅ Exported {count} result(s) to {args.csv}")
    return 0


COMMANDS = {"run": cmd_run, "list": cmd_list, "batch": cmd_batch, "export": cmd_export}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {}
    if getattr(args, "results_dir", None):
        overrides["results_dir"] = args.results_dir
    settings = get_settings(**overrides)
    init_logger(logging.DEBUG if args.verbose else logging.INFO, settings.logs_dir)

    # keep stdout clean for --json
    console = Console(stderr=bool(getattr(args, "json", False)))
    try:
        return COMMANDS[args.command](args, settings, console)
    except (ScenarioValidationError, ScenarioNotFoundError) as e:
        console.print(f"[bold red]error:[/] {e}")
        return EXIT_INVALID


if __name__ == "__main__":
    sys.exit(main())
