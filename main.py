#!/usr/bin/env python3
"""Mod Activator — Entry Point"""

import argparse
import faulthandler
import logging
import os
import signal
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path

from PySide6.QtCore import QSettings

from batch_task import ModOutcome, ProgressReporter, TaskState
from game_profiles import get_profile, load_profiles
from install_errors import ModManagerError
from mod_manager import ModManager

EXIT_CODES = {TaskState.COMPLETED: 0, TaskState.ERRORED: 1, TaskState.CANCELLED: 130}


def setup_logging(verbose: bool = False) -> tuple[logging.Logger, Path]:
    log_dir = Path(os.environ.get("APPDATA", "~")).expanduser() / "ModActivator"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "modactivator.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(message)s"))

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    # Engine modules log under their own names; collect them all at the root.
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)
    root.addHandler(console)
    return logging.getLogger("modactivator"), log_dir


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    # faulthandler writes to its own file because it can't use logging after a crash
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Activate and deactivate game mods")
    parser.add_argument("--game", help="Game profile id (e.g. fallout4)")
    parser.add_argument("--profiles", help="JSON file with extra game profiles")
    parser.add_argument("--game-root", help="Game installation directory")
    parser.add_argument("--mods-dir", help="Directory holding mod archives")
    parser.add_argument("--state-dir", help="Where the install log and overwrites are kept")
    parser.add_argument("--settings-org", default="ModActivator")
    parser.add_argument("--settings-app", default="ModActivator")
    parser.add_argument("--no-persist-settings", action="store_true")
    parser.add_argument("-y", "--yes", action="store_true", help="Confirm every overwrite")
    parser.add_argument("--stop-on-error", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show active mods")
    sub.add_parser("scan", help="List mods found in the mods directory")
    sub.add_parser("verify", help="Report active mods with files missing on disk")
    activate = sub.add_parser("activate", help="Activate mods in the given order")
    activate.add_argument("mods", nargs="+")
    deactivate = sub.add_parser("deactivate", help="Deactivate mods in the given order")
    deactivate.add_argument("mods", nargs="*")
    deactivate.add_argument("--all", action="store_true", help="Deactivate every active mod")
    return parser.parse_args(argv)


def resolve_settings(args: argparse.Namespace) -> dict[str, str]:
    """CLI flags override stored settings; used values are stored back."""
    settings = QSettings(args.settings_org, args.settings_app)
    resolved = {}
    for key in ("game", "game_root", "mods_dir", "state_dir", "profiles"):
        value = getattr(args, key)
        if value is None:
            value = settings.value(key, "", type=str)
        resolved[key] = value or ""
    if not resolved["state_dir"] and resolved["game_root"]:
        resolved["state_dir"] = str(Path(resolved["game_root"]) / ".modactivator")
    if not args.no_persist_settings:
        for key, value in resolved.items():
            if value:
                settings.setValue(key, value)
        settings.sync()
    return resolved


def prompt_confirm(prompt: str) -> bool:
    print(prompt)
    try:
        return input("[y/N] ").strip().lower() in ("y", "yes")
    except EOFError:
        return False


def print_outcome(outcome: ModOutcome):
    print(f"  {outcome.mod_id}: {outcome.message}")
    for failure in outcome.failures:
        print(f"    ! {failure.description}: {failure.error}")
    for warning in outcome.warnings:
        print(f"    ? {warning}")


def run_batch(manager: ModManager, args: argparse.Namespace) -> int:
    reporter = ProgressReporter()
    reporter.on_mod_finished(print_outcome)
    reporter.on_progress(lambda value, maximum: print(f"[{value}/{maximum}]", end="\r", flush=True))
    confirm = (lambda _prompt: True) if args.yes else prompt_confirm
    kwargs = dict(stop_on_error=args.stop_on_error, reporter=reporter)

    if args.command == "activate":
        task = manager.activate(args.mods, confirm, **kwargs)
    elif args.all:
        task = manager.deactivate_all(confirm, **kwargs)
    else:
        task = manager.deactivate(args.mods, confirm, **kwargs)

    previous = signal.signal(signal.SIGINT, lambda *_: task.cancel())
    try:
        result = task.wait()
    finally:
        signal.signal(signal.SIGINT, previous)

    print(f"\n{task.target.value.capitalize()} {result.state.value}: "
          f"{result.progress}/{result.maximum} step(s), "
          f"{len(result.skipped)} skipped, {len(result.failed)} failed")
    if result.failed_mod:
        print(f"First failure: {result.failed_mod}")
    return EXIT_CODES[result.state]


def main(argv=None) -> int:
    args = parse_args(argv)
    logger, log_dir = setup_logging(args.verbose)
    install_crash_handler(logger, log_dir)
    logger.info("Starting Mod Activator: %s", args.command)

    config = resolve_settings(args)
    missing = [key for key in ("game", "game_root", "mods_dir") if not config[key]]
    if missing:
        print(f"Missing setting(s): {', '.join('--' + m.replace('_', '-') for m in missing)}")
        return 2

    try:
        profile = get_profile(config["game"], load_profiles(config["profiles"] or None))
    except (KeyError, ModManagerError) as exc:
        print(exc)
        return 2

    manager = ModManager(profile, config["game_root"], config["mods_dir"], config["state_dir"], log_callback=print)
    try:
        if args.command == "status":
            for mod_id in manager.active_mods:
                stamp = manager.install_log.installed_at(mod_id)
                print(f"  {mod_id}  (since {stamp:%Y-%m-%d %H:%M})")
            print(f"{len(manager.active_mods)} active mod(s)")
            return 0
        if args.command == "scan":
            for mod_id, package in manager.scan_mods().items():
                state = "active" if manager.is_active(mod_id) else "inactive"
                print(f"  {mod_id}  {package.version or ''}  [{state}]  {package.filepath.name}")
            return 0
        if args.command == "verify":
            return 1 if manager.check_installed_status() else 0
        return run_batch(manager, args)
    except ModManagerError as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())
