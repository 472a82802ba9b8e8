import argparse
import json
import logging
import sys
from io import TextIOWrapper
from typing import Any, Sequence, cast

import config
from ingestion.environment import EnvironmentManager
from ingestion.errors import SyncError
from types_models import BatchResult, model_to_dict

logger = logging.getLogger(__name__)


def configure_logging(log_file: str, *, verbose: bool = False) -> None:
    """Mirror sync logs to stderr and to the sync log file."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def _settings_from_args(args: argparse.Namespace) -> config.Settings:
    overrides: dict[str, Any] = {}
    if args.source:
        overrides["SOURCE"] = args.source
    if args.path:
        overrides["LOCAL_ROOT_PATH"] = args.path
        overrides.setdefault("SOURCE", "local")
    if args.db:
        overrides["STATE_DB_PATH"] = args.db
    settings = config.CONFIG.model_copy(update=overrides)
    return config.Settings.model_validate(settings.model_dump())


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _print_batch(result: BatchResult) -> None:
    batch = result.batch
    print(
        f"✅ Batch done. Processed: {batch.processed} | Indexed: {batch.indexed} | "
        + f"Skipped: {batch.skipped} | Errors: {batch.errors} | Unchanged: {batch.unchanged}"
    )
    print(f"📋 Queue remaining: {result.queue_remaining} | Crawl complete: {result.done}")


def _default_root(args: argparse.Namespace, settings: config.Settings) -> str | None:
    if args.root:
        return args.root
    if settings.SYSTEM_FOLDER_ID:
        return settings.SYSTEM_FOLDER_ID
    # A local tree is its own root.
    if settings.SOURCE == "local":
        return "."
    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Crawl a folder tree, extract text, embed chunks and track progress."
    )
    _ = parser.add_argument("--source", choices=["local", "drive"], help="Document source")
    _ = parser.add_argument("--path", help="Root directory for the local source")
    _ = parser.add_argument("--db", help="Path to the state database")
    _ = parser.add_argument("--root", help="Root container id (defaults to SYSTEM_FOLDER_ID)")
    _ = parser.add_argument(
        "--verbose", action="store_true", help="Log per-file debug diagnostics."
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run one batch, or batches until the crawl completes")
    _ = sync.add_argument(
        "--batch-files",
        type=int,
        default=None,
        help="Maximum files processed per batch (default: DRIVE_SYNC_BATCH_FILES)",
    )
    _ = sync.add_argument(
        "--until-done", action="store_true", help="Keep running batches until the crawl completes"
    )
    _ = sync.add_argument(
        "--max-batches", type=int, default=None, help="Upper bound on batches with --until-done"
    )

    _ = sub.add_parser("reset", help="Restart the crawl from the root container")
    _ = sub.add_parser("state", help="Show crawl counters and queue length")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point for the sync pipeline."""
    cast(TextIOWrapper, sys.stdout).reconfigure(encoding="utf-8", errors="replace")

    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        settings = _settings_from_args(args)
    except ValueError as exc:
        print(f"❌ Invalid settings: {exc}")
        sys.exit(1)

    configure_logging(settings.SYNC_LOG_FILE, verbose=args.verbose)
    print(f"Using settings from {config.SETTINGS_FILE}")

    env = EnvironmentManager(settings)
    env.apply()
    root = _default_root(args, settings)

    try:
        ctx = env.initialize()
        if args.command == "state":
            _print_json(model_to_dict(ctx.engine.summary(root)))
        elif args.command == "reset":
            summary = ctx.engine.reset(root)
            print(f"🔄 Crawl state reset for {summary.root_id}")
            _print_json(model_to_dict(summary))
        elif args.until_done:
            results = ctx.engine.run_until_done(
                root, args.batch_files, max_batches=args.max_batches
            )
            for result in results:
                _print_batch(result)
            print(f"🎉 Ran {len(results)} batch(es).")
        else:
            ticket, future = ctx.runner.submit(root or "", args.batch_files)
            print(f"📨 {ticket.message} for {ticket.root_id} (batch of {ticket.batch_files})")
            if future is not None:
                _print_batch(future.result())
    except SyncError as exc:
        print(f"❌ {type(exc).__name__}: {exc}")
        sys.exit(1)
    finally:
        env.close()


__all__ = ["build_parser", "configure_logging", "main"]
