from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

import feedparser

from .config import ConfigError, load_config
from .errors import EnrichmentError
from .locking import read_lock_info
from .models import ATTR_PROCESSED, Entry, Feed
from .processor import admit_entry, build_processor
from .utils import configure_logging, json_dumps, log_event, short_hash


def _setup_logging() -> logging.Logger:
    return configure_logging("feedsummarizer", stream=sys.stderr)


def _write_output(payload: Any, out_path: str | None) -> None:
    text = json_dumps(payload, indent=2)
    if out_path:
        with open(out_path, "w", encoding="utf-8") as handle:
            handle.write(text + "\n")
        return
    sys.stdout.write(text + "\n")


def entry_from_feed_item(item: Any, feed: Feed) -> Entry:
    link = item.get("link") or ""
    guid = item.get("id") or link or short_hash(item.get("title") or "")
    tags = [tag.get("term") for tag in item.get("tags") or [] if tag.get("term")]
    return Entry(
        guid=str(guid),
        link=str(link),
        title=(item.get("title") or "").strip(),
        content=item.get("summary") or item.get("description") or "",
        tags=tags,
        feed=feed,
    )


def _cmd_enrich_url(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    processor = build_processor(config, logger)
    feed = Feed(id=0, url="", path_entries=args.selector)
    entry = Entry(guid=args.url, link=args.url, feed=feed)
    try:
        processor.process_entry(entry)
    except EnrichmentError as exc:
        log_event(logger, logging.ERROR, "enrich_failed", url=args.url, error=str(exc))
        return 1
    if not entry.has_attribute(ATTR_PROCESSED):
        log_event(logger, logging.ERROR, "enrich_not_processed", url=args.url)
        return 1
    _write_output(entry.to_dict(), args.out)
    return 0


def _cmd_enrich_feed(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    parsed = feedparser.parse(args.feed_url)
    if parsed.bozo and not parsed.entries:
        log_event(
            logger,
            logging.ERROR,
            "feed_parse_failed",
            url=args.feed_url,
            error=str(parsed.get("bozo_exception")),
        )
        return 1
    feed = Feed(id=args.feed_id, url=args.feed_url, path_entries=args.selector)
    processor = build_processor(config, logger)
    items = parsed.entries[: args.limit] if args.limit else parsed.entries
    results: list[dict[str, Any]] = []
    failures = 0
    for item in items:
        entry = entry_from_feed_item(item, feed)
        try:
            admit_entry(entry, config, processor, logger)
        except EnrichmentError as exc:
            failures += 1
            log_event(logger, logging.WARNING, "feed_entry_failed", guid=entry.guid, error=str(exc))
        results.append(entry.to_dict())
    log_event(
        logger,
        logging.INFO,
        "feed_complete",
        url=args.feed_url,
        entries=len(results),
        failures=failures,
    )
    _write_output(results, args.out)
    return 1 if failures else 0


def _cmd_lock_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    info = read_lock_info(config.lock.path)
    if info is None:
        print(f"No lock holder recorded at {config.lock.path}")
        return 0
    print(f"{config.lock.path}: {info.describe()}")
    return 0


def _cmd_config_check(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    _write_output(config, None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedsummarizer", description="Summarize and tag feed entries with Ollama"
    )
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to FS_CONFIG_PATH, then built-in defaults)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    url_parser = subparsers.add_parser("enrich-url", help="Enrich a single article URL")
    url_parser.add_argument("url", help="Article URL")
    url_parser.add_argument("--selector", default=None, help="CSS selector of the article element")
    url_parser.add_argument("--out", default=None, help="Write entry JSON to this path")
    url_parser.set_defaults(func=_cmd_enrich_url)

    feed_parser = subparsers.add_parser("enrich-feed", help="Enrich every entry of a feed")
    feed_parser.add_argument("feed_url", help="RSS/Atom feed URL or path")
    feed_parser.add_argument("--feed-id", type=int, default=0, help="Feed id for the allowlist")
    feed_parser.add_argument("--selector", default=None, help="CSS selector of the article element")
    feed_parser.add_argument("--limit", type=int, default=0, help="Process at most N entries")
    feed_parser.add_argument("--out", default=None, help="Write entries JSON to this path")
    feed_parser.set_defaults(func=_cmd_enrich_feed)

    lock_parser = subparsers.add_parser("lock-status", help="Show who holds the processing lock")
    lock_parser.set_defaults(func=_cmd_lock_status)

    check_parser = subparsers.add_parser("config-check", help="Validate and print configuration")
    check_parser.set_defaults(func=_cmd_config_check)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    sys.exit(main())
