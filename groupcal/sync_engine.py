from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

import requests
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from groupcal.config_manager import ConfigManager
from groupcal.errors import ConfigError, GraphRequestError
from groupcal.event_source import load_events
from groupcal.graph_client import GraphService
from groupcal.models import (
    DEFAULT_CALENDAR_NAME,
    OUTCOME_ALREADY_EXISTS,
    OUTCOME_CREATED,
    OUTCOME_FAILED,
    OUTCOME_WOULD_CREATE,
    EventDescriptor,
    MailboxTarget,
    RunReport,
    SyncResult,
    transaction_id_for,
)
from groupcal.query import EventFilter

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, GraphRequestError):
        return exc.transient
    return isinstance(exc, (requests.ConnectionError, requests.Timeout))


class BatchSynchronizer:
    """Ensures every event exists once in the default calendar of every mailbox.

    Existence is checked with the event's widened probe window and an exact
    subject match, then the event is created when nothing matched. The two
    calls are not atomic, so concurrent runs can still both create the same
    event; ``use_transaction_id`` lets the server drop such duplicate POSTs.
    Without a transaction id a create is sent once and never retried, since a
    POST that timed out may still have been stored.
    """

    def __init__(
        self,
        service: Any,
        *,
        calendar_name: str = DEFAULT_CALENDAR_NAME,
        max_workers: int = 1,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 2.0,
        use_transaction_id: bool = True,
        dry_run: bool = False,
    ) -> None:
        self.service = service
        self.calendar_name = calendar_name
        self.max_workers = max(1, int(max_workers))
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self.use_transaction_id = use_transaction_id
        self.dry_run = dry_run
        self._calendar_cache: dict[str, str] = {}
        self._cache_lock = threading.Lock()

    def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        retryer = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=MAX_BACKOFF_SECONDS),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(func, *args)

    def _calendar_for(self, mailbox: MailboxTarget) -> str:
        if mailbox.calendar_id:
            return mailbox.calendar_id
        with self._cache_lock:
            cached = self._calendar_cache.get(mailbox.user_id)
        if cached:
            return cached
        calendar_id = self._call(self.service.resolve_default_calendar, mailbox.user_id, self.calendar_name)
        with self._cache_lock:
            self._calendar_cache[mailbox.user_id] = calendar_id
        return calendar_id

    def sync_pair(self, event: EventDescriptor, mailbox: MailboxTarget) -> SyncResult:
        try:
            calendar_id = self._calendar_for(mailbox)
            existing = self._call(
                self.service.find_events, mailbox.user_id, calendar_id, EventFilter.probe_for(event)
            )
            if existing:
                logger.info("EXISTS %s in %s", event.label(), mailbox.label())
                return SyncResult(
                    event=event,
                    mailbox=mailbox,
                    outcome=OUTCOME_ALREADY_EXISTS,
                    message=f"{len(existing)} matching event(s) found",
                    event_id=str(existing[0].get("id", "")),
                )
            if self.dry_run:
                logger.info("WOULD CREATE %s in %s", event.label(), mailbox.label())
                return SyncResult(event=event, mailbox=mailbox, outcome=OUTCOME_WOULD_CREATE)
            transaction_id = transaction_id_for(event, mailbox) if self.use_transaction_id else None
            if transaction_id:
                created = self._call(self.service.create_event, mailbox.user_id, calendar_id, event, transaction_id)
            else:
                created = self.service.create_event(mailbox.user_id, calendar_id, event, None)
            logger.info("CREATED %s in %s", event.label(), mailbox.label())
            return SyncResult(
                event=event,
                mailbox=mailbox,
                outcome=OUTCOME_CREATED,
                event_id=str((created or {}).get("id", "")),
            )
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.error("FAILED %s in %s: %s", event.label(), mailbox.label(), message)
            return SyncResult(event=event, mailbox=mailbox, outcome=OUTCOME_FAILED, message=message)

    def _sync_mailbox(self, events: list[EventDescriptor], mailbox: MailboxTarget) -> list[SyncResult]:
        return [self.sync_pair(event, mailbox) for event in events]

    def sync(self, events: Iterable[EventDescriptor], mailboxes: Iterable[MailboxTarget]) -> list[SyncResult]:
        events = list(events)
        mailboxes = list(mailboxes)
        if self.max_workers == 1 or len(mailboxes) <= 1:
            return [self.sync_pair(event, mailbox) for event in events for mailbox in mailboxes]

        workers = min(self.max_workers, len(mailboxes))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="groupcal-mailbox") as pool:
            futures = [pool.submit(self._sync_mailbox, events, mailbox) for mailbox in mailboxes]
            per_mailbox = [future.result() for future in futures]
        # Same event-major order as the sequential path.
        return [per_mailbox[m_index][e_index] for e_index in range(len(events)) for m_index in range(len(mailboxes))]


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        service_factory: Callable[..., Any] = GraphService,
    ) -> None:
        self.config_manager = config_manager
        self.service_factory = service_factory

    def run_once(
        self,
        *,
        events_path: str | os.PathLike[str] | None = None,
        group_id: str | None = None,
        max_workers: int | None = None,
        dry_run: bool = False,
    ) -> RunReport:
        started_at = datetime.now(timezone.utc)
        config = self.config_manager.load()
        group = (group_id or config.sync.group_id).strip()
        if not group:
            raise ConfigError("sync.group_id is not set.")

        events = load_events(events_path or config.sync.events_csv)

        service = self.service_factory(config.graph, config.sync.timezone)
        service.connect()
        try:
            mailboxes = service.list_group_members(group)
            if not events or not mailboxes:
                logger.warning("Nothing to sync: %d events, %d mailboxes", len(events), len(mailboxes))
            synchronizer = BatchSynchronizer(
                service,
                calendar_name=config.sync.calendar_name,
                max_workers=max_workers if max_workers is not None else config.sync.max_workers,
                retry_attempts=config.sync.retry_attempts,
                retry_backoff_seconds=config.sync.retry_backoff_seconds,
                use_transaction_id=config.sync.use_transaction_id,
                dry_run=dry_run,
            )
            results = synchronizer.sync(events, mailboxes)
        finally:
            service.close()

        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        report = RunReport(status="success", message="", duration_ms=duration_ms, results=results)
        counts = report.counts()
        if counts[OUTCOME_FAILED]:
            report.status = "partial"
        report.message = (
            f"Processed {len(events)} events x {len(mailboxes)} mailboxes: "
            f"{counts[OUTCOME_CREATED]} created, {counts[OUTCOME_ALREADY_EXISTS]} existing, "
            f"{counts[OUTCOME_WOULD_CREATE]} pending (dry run), {counts[OUTCOME_FAILED]} failed."
        )
        logger.info("%s", report.message)
        return report
