from __future__ import annotations

import logging
import time
from typing import Any

from .config import Config
from .locking import FileLock, NullLock
from .models import ATTR_HTML, ATTR_PROCESSED, ATTR_SUMMARY, ATTR_TAGS, Entry, SummaryResult
from .pipelines.content_fetch import BrowserContentFetcher
from .pipelines.summarize_llm import SummaryClient
from .tagger import merge_tags, normalize_tags
from .utils import log_event, short_hash


class EnrichmentProcessor:
    """Fetch, summarize and tag one entry under the process lock.

    ``process_entry`` mutates and returns the entry it was given. It either
    leaves the entry untouched (lock contention, no link), restores saved tags
    (already processed), marks it processed, or raises the first
    unrecoverable error. The lock is released on every path that took it.
    """

    def __init__(
        self,
        fetcher: BrowserContentFetcher,
        summarizer: SummaryClient,
        lock: FileLock | NullLock,
        logger: logging.Logger,
    ) -> None:
        self.fetcher = fetcher
        self.summarizer = summarizer
        self.lock = lock
        self.logger = logger

    def process_entry(self, entry: Entry, force: bool = False) -> Entry:
        context = {"entry_id": short_hash(entry.guid), "started_at": int(time.time())}
        if not self.lock.acquire(entry.guid):
            self._log(logging.INFO, "entry_lock_unavailable", context)
            return entry
        try:
            return self._process_locked(entry, force, context)
        finally:
            self.lock.release()

    def _process_locked(self, entry: Entry, force: bool, context: dict[str, Any]) -> Entry:
        self._log(logging.DEBUG, "entry_start", context, link=entry.link, tags=entry.tags, force=force)

        if entry.has_attribute(ATTR_PROCESSED) and not force:
            saved = entry.attribute_list(ATTR_TAGS)
            if saved:
                entry.tags = merge_tags(entry.tags, saved)
            self._log(logging.DEBUG, "entry_already_processed", context, restored=saved)
            return entry

        if not entry.link:
            self._log(logging.INFO, "entry_missing_link", context)
            return entry

        if entry.feed is None:
            self._log(logging.WARNING, "entry_missing_feed", context, selector=entry.selector())
        selector = entry.selector()
        try:
            fetched = self.fetcher.fetch_content(entry.link, selector)
            entry.set_attribute(ATTR_HTML, fetched.html)
            self._log(
                logging.DEBUG,
                "entry_content_fetched",
                context,
                selector=selector,
                text_length=len(fetched.text),
                html_length=len(fetched.html),
            )
            result: SummaryResult | None = None
            if fetched.text:
                result = self.summarizer.generate_summary(fetched.text)
            else:
                self._log(logging.INFO, "entry_empty_content", context, link=entry.link)
        except Exception as exc:
            self._log(
                logging.ERROR,
                "entry_processing_failed",
                context,
                exc_info=True,
                link=entry.link,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        if result is not None:
            self._merge(entry, result, context)

        entry.set_attribute(ATTR_PROCESSED, True)
        self._log(logging.INFO, "entry_processed", context, tags=entry.tags)
        return entry

    def _merge(self, entry: Entry, result: SummaryResult, context: dict[str, Any]) -> None:
        entry.set_attribute(ATTR_SUMMARY, result.summary or None)
        added = merge_tags([], normalize_tags(result.tags))
        entry.tags = merge_tags(entry.tags, added)
        entry.set_attribute(ATTR_TAGS, added)
        self._log(
            logging.DEBUG,
            "entry_merged",
            context,
            summary_length=len(result.summary),
            added_tags=added,
        )

    def _log(
        self,
        level: int,
        event: str,
        context: dict[str, Any],
        *,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        log_event(self.logger, level, event, exc_info=exc_info, **context, **fields)


def admit_entry(
    entry: Entry,
    config: Config,
    processor: EnrichmentProcessor,
    logger: logging.Logger,
) -> Entry:
    """Entry-admission hook: filter what the host hands us, then process."""
    if entry.is_updated:
        log_event(logger, logging.DEBUG, "entry_admission_skipped", reason="updated", guid=entry.guid)
        return entry
    if config.selected_feeds:
        feed_id = entry.feed.id if entry.feed else None
        if feed_id is None or not config.is_feed_selected(feed_id):
            log_event(
                logger,
                logging.DEBUG,
                "entry_admission_skipped",
                reason="feed_not_selected",
                guid=entry.guid,
                feed_id=feed_id,
            )
            return entry
    return processor.process_entry(entry)


def build_processor(config: Config, logger: logging.Logger) -> EnrichmentProcessor:
    return EnrichmentProcessor(
        fetcher=BrowserContentFetcher(config.chrome, logger),
        summarizer=SummaryClient(config.ollama, config.prompt, logger),
        lock=FileLock(config.lock.path, logger),
        logger=logger,
    )
