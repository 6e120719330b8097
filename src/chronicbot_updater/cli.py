"""Command-line interface for the updater.

Usage:
    chronicbot-updater                 # run one update cycle (default)
    chronicbot-updater run             # same as above
    chronicbot-updater check           # report whether an update is available
    chronicbot-updater status          # show installed tag and runtime status
    chronicbot-updater resume          # clear a rollout pause after a failure

Exit codes: 0 up to date / promoted / skipped, 1 rolled back, 2 aborted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from chronicbot_updater import __version__
from chronicbot_updater.config import Settings, get_settings
from chronicbot_updater.logging import get_logger, setup_logging
from chronicbot_updater.orchestrator import UpdateOrchestrator
from chronicbot_updater.state import InstalledStateStore, RuntimeStatusStore

EXIT_INTERRUPTED = 130
EXIT_CONFIG_ERROR = 78


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chronicbot-updater",
        description="Check for, install and verify CHRONICbot releases with automatic rollback.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--install-dir", type=Path, help="Installation root (default from settings)"
    )
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=("run", "check", "status", "resume"),
        help="Action to perform (default: run)",
    )
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    overrides: dict[str, Any] = {}
    if args.install_dir is not None:
        overrides["install_dir"] = args.install_dir
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        # CLI overrides pass through the same validators as the environment.
        settings = Settings.model_validate({**settings.model_dump(), **overrides})
    return settings


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


async def _update(settings: Settings, check_only: bool) -> int:
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    if task is not None:
        # SIGTERM from systemd cancels the run; workspace and lock cleanup still run.
        loop.add_signal_handler(signal.SIGTERM, task.cancel)

    orchestrator = UpdateOrchestrator.from_settings(settings)
    result = await orchestrator.run(check_only=check_only)
    _emit(result.to_dict())
    return result.exit_code


def _status(settings: Settings) -> int:
    store = InstalledStateStore(
        settings.install_dir, settings.version_file, settings.managed_directories
    )
    installed = store.load()
    _emit(
        {
            "installed_tag": installed.current_tag,
            "install_dir": str(settings.install_dir),
            "active_directories": {
                str(path): path.exists() for path in installed.active_directories
            },
            "runtime": RuntimeStatusStore(settings.state_file).snapshot(),
        }
    )
    return 0


def _resume(settings: Settings) -> int:
    status = RuntimeStatusStore(settings.state_file)
    resumed = status.resume()
    _emit({"resumed": resumed, "runtime": status.snapshot()})
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(settings)
    log = get_logger("chronicbot_updater.cli")

    if args.command == "status":
        return _status(settings)
    if args.command == "resume":
        return _resume(settings)

    log.info(
        "updater_starting",
        version=__version__,
        command=args.command,
        install_dir=str(settings.install_dir),
    )
    try:
        return asyncio.run(_update(settings, check_only=args.command == "check"))
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.error("updater_interrupted", command=args.command)
        return EXIT_INTERRUPTED


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
