"""CLI entrypoint for the orchestration core.

Exit codes:
- 0: success
- 1: unexpected failure
- 2: configuration or input error
- 3: conflict (e.g. ambiguous decision rules)
- 4: process runtime failure
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from process_orchestrator import __version__
from process_orchestrator.config import CoreSettings
from process_orchestrator.core import OrchestrationCore
from process_orchestrator.decisions import DecisionTable, evaluate
from process_orchestrator.errors import (
    ConflictError,
    ExternalDependencyError,
    NotFoundError,
    ValidationFailed,
)
from process_orchestrator.logging import configure_logging

logger = logging.getLogger(__name__)


def _load_json(value: str) -> Any:
    """Parse ``value`` as JSON, or as a path to a JSON file when prefixed with ``@``."""

    if value.startswith("@"):
        return json.loads(Path(value[1:]).read_text(encoding="utf-8"))
    return json.loads(value)


def _print_json(obj: object) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="process-orchestrator",
        description="Workflow orchestration core: decisions, tasks, SLA clocks and triggers",
    )
    parser.add_argument(
        "--version", action="version", version=f"process-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    evaluate_decision = subparsers.add_parser(
        "evaluate-decision", help="Evaluate a decision table against one input row"
    )
    evaluate_decision.add_argument(
        "--table",
        required=True,
        help="Decision table id in the state store, or '@path.json' for a table file",
    )
    evaluate_decision.add_argument(
        "--input",
        dest="input_row",
        required=True,
        help="Input row as JSON, or '@path.json'",
    )

    sla_tick = subparsers.add_parser("sla-tick", help="Run one SLA tick")
    sla_tick.add_argument(
        "--workspace", default=None, help="Only this workspace (default: all with active SLAs)"
    )

    cron_tick = subparsers.add_parser("cron-tick", help="Evaluate cron triggers once")
    cron_tick.add_argument("--workspace", default=None, help="Only this workspace (default: all)")

    deploy = subparsers.add_parser("deploy", help="Store and deploy a BPMN process definition")
    deploy.add_argument("--workspace", required=True, help="Owning workspace id")
    deploy.add_argument("--name", required=True, help="Process definition name")
    deploy.add_argument("--file", required=True, type=Path, help="BPMN XML file")
    deploy.add_argument("--id", dest="definition_id", default=None, help="Existing definition id")

    subparsers.add_parser(
        "run-scheduler", help="Run SLA and cron ticks in the foreground until interrupted"
    )

    return parser


def _evaluate_decision(args: argparse.Namespace, settings: CoreSettings) -> int:
    row = _load_json(args.input_row)
    if not isinstance(row, dict):
        raise ValidationFailed("Input row must be a JSON object")

    if args.table.startswith("@"):
        table = DecisionTable.model_validate(_load_json(args.table))
        result = evaluate(table, row)
    else:
        core = OrchestrationCore.from_settings(settings)
        try:
            result = core.evaluate_decision(args.table, row)
        finally:
            core.close()
    _print_json(result.to_json())
    return 0


def _run_scheduler(core: OrchestrationCore) -> int:
    schedulers = core.build_schedulers()
    for scheduler in schedulers:
        scheduler.start()
    print("Scheduler running; press Ctrl+C to stop")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        for scheduler in schedulers:
            scheduler.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = CoreSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "evaluate-decision":
            return _evaluate_decision(args, settings)

        core = OrchestrationCore.from_settings(settings)
        try:
            if args.command == "sla-tick":
                workspaces = (
                    [args.workspace]
                    if args.workspace
                    else core.sla.workspaces_with_active_instances()
                )
                _print_json([core.sla.tick(ws).to_json() for ws in workspaces])
                return 0

            if args.command == "cron-tick":
                executions = core.triggers.cron_tick(args.workspace)
                _print_json([e.model_dump(mode="json") for e in executions])
                return 0

            if args.command == "deploy":
                record = core.processes.save_definition(
                    workspace_id=args.workspace,
                    name=args.name,
                    bpmn_xml=args.file.read_text(encoding="utf-8"),
                    definition_id=args.definition_id,
                )
                record = core.processes.deploy(record.id)
                logger.info(
                    "Deployed process definition",
                    extra={"definition_id": record.id, "deployed_key": record.deployed_key},
                )
                print(f"Deployed {record.name} as {record.deployed_key} (definition {record.id})")
                return 0

            if args.command == "run-scheduler":
                return _run_scheduler(core)
        finally:
            core.close()

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except (
        ValidationFailed,
        NotFoundError,
        ValidationError,
        json.JSONDecodeError,
        FileNotFoundError,
    ) as e:
        print(str(e), file=sys.stderr)
        return 2

    except ConflictError as e:
        logger.warning(str(e), extra={"kind": e.kind})
        print(str(e), file=sys.stderr)
        return 3

    except ExternalDependencyError as e:
        logger.error("Process runtime failure", extra={"error": str(e), "retryable": e.retryable})
        print(str(e), file=sys.stderr)
        return 4

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
