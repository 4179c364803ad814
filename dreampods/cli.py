"""Command-line entry point.

    dreampods status
    dreampods ensure generation --verify-only
    dreampods start
    dreampods stop
    dreampods billing --period week
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from collections.abc import Callable, Sequence
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

from .config import Settings
from .errors import DreamPodsError
from .models import PodRecord, PodRole, SequenceReport, StepStatus, format_uptime
from .observability import LogConfig, setup_logging, teardown_logging
from .orchestrator import DreamOrchestrator, PipelineStatus
from .reconciler import EnsureOptions

type OrchestratorFactory = Callable[[Settings], DreamOrchestrator]

_STEP_STYLES = {
    StepStatus.OK: "green",
    StepStatus.SKIPPED: "dim",
    StepStatus.TIMEOUT: "yellow",
    StepStatus.ERROR: "red",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dreampods", description="Dream pipeline pod orchestrator")
    parser.add_argument("--log-level", type=str, default="WARNING")
    parser.add_argument("--log-file", type=str, default=None)
    parser.add_argument("--json", action="store_true", help="Print raw JSON instead of tables")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show pod and consumer status")

    ensure = sub.add_parser("ensure", help="Make one role's pod exist and run")
    ensure.add_argument("role", type=str, help="generation | orchestration (or comfyui | dreamgen)")
    ensure.add_argument("--verify-only", action="store_true", help="Stop the pod again once it starts")
    ensure.add_argument("--max-attempts", type=int, default=2)

    sub.add_parser("start", help="Start the full pipeline")
    sub.add_parser("stop", help="Stop the full pipeline")

    billing = sub.add_parser("billing", help="Raw billing records")
    billing.add_argument("--period", type=str, default="day", choices=["day", "week", "month"])
    return parser


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: _jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if f.repr
        }
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


# ─── Renderers ───────────────────────────────────────────────────────


def _pod_table(pods: dict[PodRole, PodRecord | None], costs: dict[PodRole, float]) -> Table:
    table = Table(title="Pods")
    for column in ("Role", "Pod", "Status", "GPU", "Uptime", "Session cost"):
        table.add_column(column)
    for role, pod in pods.items():
        if pod is None:
            table.add_row(role.label, Text("-", style="dim"), "", "", "", "")
            continue
        style = "green" if pod.is_running else "yellow"
        table.add_row(
            role.label,
            f"{pod.name} ({pod.id})",
            Text(str(pod.status), style=style),
            pod.gpu.display_name,
            format_uptime(pod.uptime_seconds),
            f"${costs.get(role, 0.0):.2f}",
        )
    return table


def render_status(console: Console, status: PipelineStatus) -> None:
    console.print(Text(f"{status.state}: {status.message}", style="bold"))
    console.print(_pod_table(dict(status.pods), dict(status.session_cost)))
    if status.consumer:
        available = status.consumer.get("available")
        line = "consumer: available" if available else f"consumer: {status.consumer.get('error', 'unavailable')}"
        console.print(Text(line, style="green" if available else "red"))
    render_errors(console, status.errors)


def render_errors(console: Console, errors: Any) -> None:
    entries = {k: v for k, v in errors.items() if v is not None}
    if not entries:
        console.print(Text("No recorded errors", style="dim"))
        return
    table = Table(title="Last errors")
    table.add_column("Subject")
    table.add_column("When")
    table.add_column("Message")
    for subject, record in entries.items():
        table.add_row(str(subject), record.timestamp_iso, Text(record.message, style="red"))
    console.print(table)


def render_report(console: Console, report: SequenceReport) -> None:
    table = Table(title=report.message or "Sequence")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Detail")
    for step in report.steps:
        detail = ", ".join(f"{k}={v}" for k, v in step.detail.items())
        table.add_row(step.name, Text(str(step.status), style=_STEP_STYLES.get(step.status, "")), detail)
    console.print(table)
    for warning in report.warnings:
        console.print(Text(f"warning: {warning}", style="yellow"))
    if report.error:
        console.print(Text(f"error: {report.error}", style="red"))


# ─── Commands ────────────────────────────────────────────────────────


async def run(args: argparse.Namespace, dreams: DreamOrchestrator, console: Console) -> int:
    match args.command:
        case "status":
            status = await dreams.get_status()
            if args.json:
                console.print_json(json.dumps(_jsonable(status)))
            else:
                render_status(console, status)
            return 0

        case "ensure":
            options = EnsureOptions(max_recreate_attempts=args.max_attempts, verify_only=args.verify_only)
            result = await dreams.ensure(args.role, options)
            if args.json:
                console.print_json(json.dumps(_jsonable(result)))
            else:
                console.print(Text(
                    f"{result.role.label}: {result.action} pod {result.pod_id} "
                    f"after {result.attempts} attempt(s)",
                    style="green",
                ))
                for warning in result.warnings:
                    console.print(Text(f"warning: {warning}", style="yellow"))
            return 0

        case "start" | "stop":
            report = await (dreams.start_pipeline() if args.command == "start" else dreams.stop_pipeline())
            if args.json:
                console.print_json(json.dumps(_jsonable(report)))
            else:
                render_report(console, report)
            return 0 if report.success else 1

        case "billing":
            records = await dreams.get_billing(args.period)
            console.print_json(json.dumps(records))
            return 0

    return 2


def main(argv: Sequence[str] | None = None, *, factory: OrchestratorFactory = DreamOrchestrator) -> int:
    args = build_parser().parse_args(argv)
    console = Console()
    handlers = setup_logging(LogConfig(level=args.log_level.upper(), file=args.log_file))

    async def _main() -> int:
        async with factory(Settings.from_env()) as dreams:
            return await run(args, dreams, console)

    try:
        return asyncio.run(_main())
    except DreamPodsError as e:
        console.print(Text(f"error: {e}", style="red"))
        return 1
    finally:
        teardown_logging(handlers)


def cli() -> None:
    sys.exit(main())
