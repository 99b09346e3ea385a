"""
promptkit entry point.

This file handles startup concerns (arg-parsing, logging) and runs either an agent task or a
one-shot structured extraction against the configured completion backend.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from promptkit.agent.planner import (
    PlanningAgentConfig,
    run_agent_with_planning,
)
from promptkit.common import (
    AnsiColors,
    colored_print,
    print_step,
)
from promptkit.config import settings
from promptkit.core.backends import available_backends
from promptkit.core.client import PromptClient
from promptkit.core.errors import (
    PromptKitError,
    recovery_suggestion,
)
from promptkit.core.schema import TaskStatus
from promptkit.structured.structured_output import extract_with_client
from promptkit.tools.builtins import builtin_registry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    # Keep per-request HTTP logs out of the way
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run promptkit agents and extractions")
    parser.add_argument(
        "--provider",
        choices=available_backends(),
        type=str.lower,
        default=settings.PROVIDER,
        help="Completion backend (default from env: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run an agent on a task")
    run.add_argument("task", help="Task description")
    run.add_argument("--plan", action="store_true", help="Plan and reflect around the run")
    run.add_argument(
        "--max-iterations",
        type=int,
        default=settings.MAX_ITERATIONS,
        help="Iteration budget (default: %(default)s)",
    )
    run.add_argument(
        "--builtins", action="store_true", help="Expose the built-in time and math tools"
    )

    extract = sub.add_parser("extract", help="Extract JSON matching a schema")
    extract.add_argument("prompt", help="Request sent to the model")
    extract.add_argument(
        "--schema", type=Path, required=True, help="Path to a JSON schema file"
    )
    extract.add_argument(
        "--max-retries",
        type=int,
        default=settings.MAX_RETRIES,
        help="Total attempts (default: %(default)s)",
    )
    return parser


async def _run_task(client: PromptClient, args: argparse.Namespace) -> int:
    config = PlanningAgentConfig(
        max_iterations=args.max_iterations,
        enable_planning=args.plan,
        registry=builtin_registry() if args.builtins else None,
        on_step=print_step,
    )
    try:
        result = await run_agent_with_planning(args.task, config, client)
    finally:
        await client.aclose()

    if result.status is TaskStatus.FAILED:
        colored_print(f"⚠️ {result.error}", AnsiColors.RED)
        if result.error is not None:
            colored_print(recovery_suggestion(result.error), AnsiColors.YELLOW)
        return 1
    colored_print(result.final_answer or "", AnsiColors.YELLOW)
    return 0


async def _run_extract(client: PromptClient, args: argparse.Namespace) -> int:
    schema: Any = json.loads(args.schema.read_text(encoding="utf-8"))
    try:
        value = await extract_with_client(client, args.prompt, schema, args.max_retries)
    except PromptKitError as exc:
        colored_print(f"⚠️ {exc}", AnsiColors.RED)
        colored_print(recovery_suggestion(exc), AnsiColors.YELLOW)
        return 1
    finally:
        await client.aclose()
    print(json.dumps(value, indent=2))
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the promptkit command.

    Returns the process exit code: 0 on success, 1 when the run failed or extraction gave up.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser()
    args = parser.parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level
    _init_logging(settings.LOG_LEVEL)

    logger.info("Starting promptkit [%s, provider=%s]", args.command, args.provider)
    logger.debug(
        "Settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY", "ANTHROPIC_API_KEY"})
    )

    client = PromptClient.from_provider(args.provider)
    if args.command == "run":
        return asyncio.run(_run_task(client, args))
    return asyncio.run(_run_extract(client, args))


if __name__ == "__main__":
    sys.exit(main())
