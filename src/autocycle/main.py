"""
main.py — autocycle Entry Point

Usage:
    autocycle                                   # run with config/config.yaml
    autocycle run --profile main --seed 7       # reproducible simulated run
    autocycle run --max-runtime 600             # override the runtime ceiling
    autocycle status --profile main             # show saved progress
    autocycle reset --profile main              # delete saved progress
    autocycle --log-level DEBUG --config path/to/config.yaml
"""

from __future__ import annotations

from dotenv import load_dotenv
from pathlib import Path


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


import argparse
import asyncio
import random
import signal
import sys
from typing import Optional, Sequence

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_FATAL = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="autocycle",
        description="autocycle — weighted activity scheduler for long-running automation",
    )
    parser.add_argument(
        "subcommand",
        nargs="?",
        choices=["run", "status", "reset"],
        default="run",
        help=(
            "'run' — run the scheduler against simulated activities (default). "
            "'status' — print the saved profile. "
            "'reset' — delete the saved profile."
        ),
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $AUTOCYCLE_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--profile",
        default=None,
        help="Profile id to load/save (default: persistence.profile_id from config)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed the scheduler and simulation random sources",
    )
    parser.add_argument(
        "--max-runtime",
        type=float,
        default=None,
        help="Override scheduler.max_runtime_seconds",
    )
    parser.add_argument(
        "--action-delay",
        type=float,
        default=0.05,
        help="Seconds each simulated action takes (default: 0.05)",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - the config file or a command-line override has invalid values
        (Pydantic ValidationError)
      - cross-field problems are found (ConfigurationError from validate_all())
    """
    from pydantic import ValidationError

    from autocycle.config.settings import load_settings
    from autocycle.exceptions import ConfigurationError
    from autocycle.observability.logger import get_logger, setup_logging

    try:
        settings = load_settings(args.config)
        # Sub-models validate on assignment, so bad overrides fail here too
        if args.profile:
            settings.persistence.profile_id = args.profile
        if args.max_runtime is not None:
            settings.scheduler.max_runtime_seconds = args.max_runtime
        if args.seed is not None:
            settings.scheduler.seed = args.seed
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix your config file or environment and restart.\n",
            file=sys.stderr,
        )
        sys.exit(EXIT_CONFIG)
    except (ConfigurationError, OSError, ValueError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(EXIT_CONFIG)

    if args.subcommand == "run":
        try:
            settings.validate_all()
        except ConfigurationError as exc:
            print(str(exc), file=sys.stderr)
            sys.exit(EXIT_CONFIG)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    return settings, get_logger("autocycle.main")


async def _cmd_run(settings, log, args: argparse.Namespace) -> int:
    from rich.console import Console

    from autocycle.exceptions import ConfigurationError
    from autocycle.persistence.store import build_store
    from autocycle.scheduler.reporter import LogReportSink, RichReportSink
    from autocycle.scheduler.scheduler import ActivityScheduler
    from autocycle.scheduler.types import RunOutcome
    from autocycle.simulation import build_simulation

    console = Console()
    sim_rng = random.Random(settings.scheduler.seed) if settings.scheduler.seed is not None else None
    works, probes = build_simulation(
        settings.activities,
        rng=sim_rng,
        action_delay=args.action_delay,
    )
    try:
        store = build_store(settings.persistence.backend, settings.persistence.path)
        scheduler = ActivityScheduler.from_settings(
            settings,
            works,
            probes=probes,
            store=store,
            report_sinks=[RichReportSink(console), LogReportSink()],
        )
    except ConfigurationError as exc:
        console.print(f"[red]❌ {exc}[/]")
        return EXIT_CONFIG

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: Ctrl+C raises KeyboardInterrupt instead

    log.info("main.run.start", profile_id=settings.profile_id, activities=len(settings.activities))
    try:
        result = await scheduler.run()
    except ConfigurationError as exc:
        console.print(f"[red]❌ {exc}[/]")
        return EXIT_CONFIG

    for err in result.persistence_errors:
        console.print(f"[yellow]⚠ Persistence problem: {err}[/]")
    if result.outcome is RunOutcome.FATAL:
        console.print(f"[red]❌ Run aborted: {result.error}[/]")
        return EXIT_FATAL
    console.print(
        f"[green]✓ Run finished ({result.outcome.value})[/] — "
        f"{result.total_actions} actions, {result.breaks_taken} breaks, "
        f"{result.elapsed_s:.1f}s"
    )
    return EXIT_OK


async def _cmd_status(settings, log) -> int:
    from rich.console import Console

    from autocycle.exceptions import ConfigurationError, PersistenceError
    from autocycle.persistence.store import build_store
    from autocycle.scheduler.reporter import ProgressReporter

    console = Console()
    store = build_store(settings.persistence.backend, settings.persistence.path)
    try:
        await store.init()
        profile = await store.load(settings.profile_id)
    except ConfigurationError as exc:
        console.print(f"[red]❌ {exc}[/]")
        return EXIT_CONFIG
    except PersistenceError as exc:
        console.print(f"[red]❌ {exc}[/]")
        return EXIT_FATAL
    finally:
        await store.close()

    log.info("main.status", profile_id=settings.profile_id, found=profile is not None)
    if profile is None:
        console.print(f"[dim]No saved progress for profile '{settings.profile_id}'.[/]")
        return EXIT_OK
    console.print(ProgressReporter().render_table(profile.progress, title=f"Profile: {profile.profile_id}"))
    disabled = [a.key for a in profile.activities if not a.enabled]
    if disabled:
        console.print(f"[dim]Disabled: {', '.join(disabled)}[/]")
    return EXIT_OK


async def _cmd_reset(settings, log) -> int:
    from autocycle.exceptions import ConfigurationError, PersistenceError
    from autocycle.persistence.store import build_store

    store = build_store(settings.persistence.backend, settings.persistence.path)
    try:
        await store.init()
        deleted = await store.delete(settings.profile_id)
    except ConfigurationError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except PersistenceError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return EXIT_FATAL
    finally:
        await store.close()
    log.info("main.reset", profile_id=settings.profile_id, deleted=deleted)
    print(f"Profile '{settings.profile_id}' {'deleted' if deleted else 'not found'}.")
    return EXIT_OK


async def main(argv: Optional[Sequence[str]] = None) -> int:
    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    args = parse_args(argv)
    settings, log = bootstrap(args)

    if args.subcommand == "status":
        return await _cmd_status(settings, log)
    if args.subcommand == "reset":
        return await _cmd_reset(settings, log)
    return await _cmd_run(settings, log, args)


def main_sync() -> None:
    """Synchronous entry point for console_scripts (pyproject.toml)."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    main_sync()
