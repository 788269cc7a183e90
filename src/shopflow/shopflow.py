# -*- coding: utf-8 -*-
"""CLI entrypoint: walk a storefront from search to the sign-in prompt."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from shopflow.Exceptions import ManifestError
from shopflow.events import JsonlEventSink
from shopflow.execution import TaskResult, execute_task
from shopflow.settings import (
    SettingsLoadError,
    build_browser_config,
    build_flow_config,
    load_settings,
)
from shopflow.site_profile import resolve_profile
from shopflow.utils.manifest_loader import require_manifest_dir


def setup_logging(save_dir: Path, quiet: bool = False) -> logging.Logger:
    """Log to ``shopflow.log`` in ``save_dir`` and, unless quiet, to the console."""
    logger = logging.getLogger("shopflow")
    logger.setLevel(logging.INFO)
    if not logger.handlers:  # Avoid adding handlers multiple times
        save_dir.mkdir(parents=True, exist_ok=True)
        f_handler = logging.FileHandler(save_dir / "shopflow.log", mode="a")
        f_handler.setLevel(logging.INFO)
        f_handler.setFormatter(logging.Formatter("%(asctime)s - %(message)s"))
        logger.addHandler(f_handler)
        if not quiet:
            c_handler = logging.StreamHandler()
            c_handler.setLevel(logging.INFO)
            c_handler.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(c_handler)
    return logger


def _load_tasks_from_json(path: Path) -> List[Dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, list):
        return [item for item in data if item]
    if isinstance(data, dict):
        return [data]
    raise ValueError(f"Unsupported tasks payload in {path}")


def _determine_tasks(
    settings: Dict[str, Any],
    args: argparse.Namespace,
) -> List[Dict[str, Any]]:
    if args.query:
        return [
            {
                "task_id": args.task_id or "manual",
                "query": args.query,
                "website": args.website,
            }
        ]

    if args.tasks:
        return _load_tasks_from_json(Path(args.tasks).resolve())

    # Fallback to the configured query/website
    return [{"task_id": args.task_id or "default"}]


async def run_tasks(
    settings: Dict[str, Any],
    tasks: Iterable[Dict[str, Any]],
    overrides: Optional[Dict[str, Any]] = None,
    headless: Optional[bool] = None,
    quiet: bool = False,
    hold: bool = False,
    playwright_factory=None,
) -> List[TaskResult]:
    flow_config = build_flow_config(settings, overrides)
    browser_config = build_browser_config(settings, headless=headless)
    basic_cfg = settings.get("basic", {}) or {}
    runner_cfg = settings.get("runner", {}) or {}
    save_dir = Path(basic_cfg.get("save_file_dir") or "shopflow_runs").resolve()
    manifest_dir = require_manifest_dir(settings.get("manifest", {}).get("dir"))
    events_dir = Path(runner_cfg.get("events_dir") or save_dir / "events").resolve()
    sink = JsonlEventSink(events_dir / f"run_{uuid.uuid4().hex[:12]}", verbose=bool(runner_cfg.get("verbose", False)))

    results: List[TaskResult] = []
    for idx, task in enumerate(tasks, start=1):
        task = dict(task)
        task.setdefault("task_id", f"task_{idx}")
        profile = resolve_profile(task.get("website") or flow_config.website, manifest_dir)
        result = await execute_task(
            task,
            flow_config,
            browser_config,
            profile,
            save_dir,
            sink=sink,
            playwright_factory=playwright_factory,
            hold=hold,
        )
        results.append(result)
        if not quiet:
            status = "✅" if result.success else "⚠️"
            print(
                f"{status} {task['task_id']}: status={result.status} steps={result.steps} "
                f"duration_ms={result.duration_ms}"
            )
    return results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the storefront checkout walk up to the sign-in prompt")
    parser.add_argument("-c", "--config", help="Path to base TOML config")
    parser.add_argument("--profile", action="append", help="Profile name to merge on top of the base config")
    parser.add_argument("--tasks", help="Path to tasks JSON override")
    parser.add_argument("--query", help="Search query for a single run")
    parser.add_argument("--brand", action="append", help="Preferred brand token (repeatable)")
    parser.add_argument("--website", help="Storefront URL")
    parser.add_argument("--identifier", help="Sign-in identifier (mobile number or email)")
    parser.add_argument("--task-id", help="Identifier for single-task runs")
    parser.add_argument("--headless", action="store_true", default=None, help="Run the browser headless")
    parser.add_argument("--hold", action="store_true", help="Keep the browser open until Enter is pressed")
    parser.add_argument("--quiet", action="store_true", help="Suppress console output")
    return parser


async def run_cli_async(args: argparse.Namespace) -> List[TaskResult]:
    settings, _ = load_settings(
        config_path=Path(args.config).resolve() if args.config else None,
        profiles=args.profile or [],
    )
    save_dir = Path((settings.get("basic") or {}).get("save_file_dir") or "shopflow_runs").resolve()
    setup_logging(save_dir, quiet=args.quiet)
    tasks = _determine_tasks(settings, args)
    overrides = {
        "website": args.website,
        "search_query": args.query,
        "brand_tokens": args.brand,
        "identifier": args.identifier,
    }
    return await run_tasks(
        settings,
        tasks,
        overrides=overrides,
        headless=args.headless,
        quiet=args.quiet,
        hold=args.hold,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        results = asyncio.run(run_cli_async(args))
    except (SettingsLoadError, ManifestError, FileNotFoundError) as exc:
        parser.error(str(exc))
        return 2
    return 0 if results and all(r.success for r in results) else 1


async def run_with_config(
    config: Dict[str, Any],
    tasks: Iterable[Dict[str, Any]],
    playwright_factory=None,
) -> List[TaskResult]:
    """Utility for tests to execute the CLI loop with an in-memory config."""
    return await run_tasks(config, tasks, quiet=True, playwright_factory=playwright_factory)


if __name__ == "__main__":
    raise SystemExit(main())
