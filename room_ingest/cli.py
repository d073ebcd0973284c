from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

from .config import load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError, DatasetError, InputError, LLMError, StorageError
from .pipeline import handle_webhook, parse_webhook_payload
from .report import format_report
from .run_log import RunLogger
from .storage import SQLiteListingStore


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite database path (defaults to storage.path from the config).",
    )


def _add_run_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log",
        default=None,
        help="JSONL run log path (defaults to ingest.log next to the database).",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Run without network calls using a stub dataset and a stub completion client.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="room_ingest")

    subparsers = parser.add_subparsers(dest="command", required=True)

    webhook = subparsers.add_parser(
        "webhook",
        help="Process an Apify webhook body and print the ingestion report.",
    )
    _add_common_args(webhook)
    _add_run_args(webhook)
    webhook.add_argument(
        "--payload",
        required=True,
        help="Path to the webhook JSON body, or '-' to read it from stdin.",
    )
    webhook.set_defaults(_handler=_cmd_webhook)

    ingest = subparsers.add_parser(
        "ingest",
        help="Ingest one Apify dataset by id.",
    )
    _add_common_args(ingest)
    _add_run_args(ingest)
    ingest.add_argument(
        "--dataset-id",
        required=True,
        help="Apify dataset id holding the scraped group posts.",
    )
    ingest.add_argument(
        "--skip-similar",
        action="store_true",
        default=None,
        help="Skip posts classified as similar duplicates.",
    )
    ingest.add_argument(
        "--keep-exact",
        action="store_true",
        default=None,
        help="Process exact duplicates instead of skipping them.",
    )
    ingest.set_defaults(_handler=_cmd_ingest)

    show = subparsers.add_parser(
        "show",
        help="Print one stored listing as JSON.",
    )
    _add_common_args(show)
    show.add_argument("--id", required=True, help="Listing id (the post's legacy id).")
    show.set_defaults(_handler=_cmd_show)

    delete = subparsers.add_parser(
        "delete",
        help="Mark one stored listing as unavailable.",
    )
    _add_common_args(delete)
    delete.add_argument("--id", required=True, help="Listing id (the post's legacy id).")
    delete.set_defaults(_handler=_cmd_delete)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _db_path(args: argparse.Namespace, cfg: AppConfig) -> Path:
    return Path(args.db or cfg.storage.path)


def _read_payload(source: str) -> Any:
    try:
        if source == "-":
            text = sys.stdin.read()
        else:
            text = Path(source).read_text(encoding="utf-8")
    except OSError as e:
        raise InputError(f"Failed to read webhook payload: {source}: {e}") from e

    try:
        return json.loads(text)
    except ValueError as e:
        raise InputError(f"Webhook payload is not valid JSON: {e}") from e


def _run_pipeline(args: argparse.Namespace, body: Any) -> int:
    cfg = load_config(args.config)
    # Reject a malformed body before touching secrets or the database.
    parse_webhook_payload(body)

    offline = bool(getattr(args, "offline", False))
    secrets = resolve_runtime_secrets(
        cfg,
        require_apify=not offline,
        require_openai=not offline,
    )

    db_path = _db_path(args, cfg)
    log_path = Path(args.log) if args.log else db_path.parent / "ingest.log"

    with RunLogger.open(log_path) as log:
        log.info(
            "command_started",
            command=args.command,
            config_path=str(args.config),
            db_path=str(db_path),
            offline=offline,
        )

        dataset_reader = None
        extractor = None
        if offline:
            from .llm import ListingExtractor
            from .offline import OfflineCompletionClient, OfflineDatasetReader

            dataset_reader = OfflineDatasetReader()
            extractor = ListingExtractor(
                OfflineCompletionClient(),
                extraction_cfg=cfg.extraction,
                temperature=cfg.openai.temperature,
                logger=log,
            )

        try:
            with SQLiteListingStore.open(db_path) as store:
                report = handle_webhook(
                    cfg,
                    body,
                    store=store,
                    dataset_reader=dataset_reader,
                    extractor=extractor,
                    secrets=secrets,
                    logger=log,
                    sleep_fn=(lambda _s: None) if offline else None,
                )
        except Exception as e:
            log.exception("command_failed", exc=e)
            raise

    print(json.dumps(report, indent=2, ensure_ascii=False, sort_keys=True))
    _eprint(f"summary={format_report(report)}")
    _eprint(f"run_log={log_path}")

    return 0 if report.get("success") else 3


def _cmd_webhook(args: argparse.Namespace) -> int:
    return _run_pipeline(args, _read_payload(args.payload))


def _cmd_ingest(args: argparse.Namespace) -> int:
    body: dict[str, Any] = {"resource": {"defaultDatasetId": args.dataset_id}}
    if args.keep_exact:
        body["skipExactDuplicates"] = False
    if args.skip_similar:
        body["skipSimilarDuplicates"] = True
    return _run_pipeline(args, body)


def _cmd_show(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    with SQLiteListingStore.open(_db_path(args, cfg)) as store:
        listing = store.find_by_key(args.id)

    if listing is None:
        _eprint(f"Listing not found: {args.id}")
        return 4

    print(json.dumps(listing.public_view(), indent=2, ensure_ascii=False, sort_keys=True))
    return 0


def _cmd_delete(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    with SQLiteListingStore.open(_db_path(args, cfg)) as store:
        found = store.mark_unavailable(args.id)

    if not found:
        _eprint(f"Listing not found: {args.id}")
        return 4

    print(f"id={args.id}")
    print("available=false")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except (ConfigError, InputError) as e:
        _eprint(str(e))
        return 2
    except (DatasetError, LLMError, StorageError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
