from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


LOCAL_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
DEFAULT_CALENDAR_NAME = "Calendar"
DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

OUTCOME_CREATED = "created"
OUTCOME_ALREADY_EXISTS = "already_exists"
OUTCOME_FAILED = "failed"
OUTCOME_WOULD_CREATE = "would_create"
OUTCOMES = (OUTCOME_CREATED, OUTCOME_ALREADY_EXISTS, OUTCOME_FAILED, OUTCOME_WOULD_CREATE)


def parse_local_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1]
    parsed = datetime.fromisoformat(text)
    return parsed.replace(tzinfo=None)


def format_local_datetime(value: datetime) -> str:
    return value.replace(tzinfo=None).strftime(LOCAL_DATETIME_FORMAT)


@dataclass
class GraphConfig:
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    base_url: str = DEFAULT_GRAPH_BASE_URL
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GraphConfig":
        data = data or {}
        return cls(
            tenant_id=str(data.get("tenant_id", "")).strip(),
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            base_url=str(data.get("base_url", DEFAULT_GRAPH_BASE_URL)).strip().rstrip("/")
            or DEFAULT_GRAPH_BASE_URL,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )

    def is_complete(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class SyncConfig:
    group_id: str = ""
    events_csv: str = "events.csv"
    timezone: str = "UTC"
    calendar_name: str = DEFAULT_CALENDAR_NAME
    max_workers: int = 1
    retry_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    use_transaction_id: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            group_id=str(data.get("group_id", "")).strip(),
            events_csv=str(data.get("events_csv", "events.csv")).strip() or "events.csv",
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            calendar_name=str(data.get("calendar_name", DEFAULT_CALENDAR_NAME)).strip()
            or DEFAULT_CALENDAR_NAME,
            max_workers=max(1, int(data.get("max_workers", 1))),
            retry_attempts=max(1, int(data.get("retry_attempts", 3))),
            retry_backoff_seconds=max(0.0, float(data.get("retry_backoff_seconds", 2.0))),
            use_transaction_id=bool(data.get("use_transaction_id", True)),
        )


@dataclass
class AppConfig:
    graph: GraphConfig = field(default_factory=GraphConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            graph=GraphConfig.from_dict(data.get("graph")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EventDescriptor:
    """An all-day event to place in every target mailbox.

    ``probe_start``/``probe_end`` widen the existence check by one unit on each
    side because stored all-day boundaries are normalized by the server and
    do not compare equal to the submitted timestamps.
    """

    subject: str
    start: datetime
    end: datetime
    probe_start: datetime
    probe_end: datetime

    @classmethod
    def build(
        cls,
        subject: str,
        start: datetime,
        end: datetime,
        probe_start: datetime | None = None,
        probe_end: datetime | None = None,
    ) -> "EventDescriptor":
        return cls(
            subject=subject,
            start=start,
            end=end,
            probe_start=probe_start if probe_start is not None else start - timedelta(days=1),
            probe_end=probe_end if probe_end is not None else end + timedelta(days=1),
        )

    def identity_key(self) -> str:
        return f"{self.subject}|{format_local_datetime(self.start)}|{format_local_datetime(self.end)}"

    def label(self) -> str:
        return f"'{self.subject}' {format_local_datetime(self.start)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "start": format_local_datetime(self.start),
            "end": format_local_datetime(self.end),
            "probe_start": format_local_datetime(self.probe_start),
            "probe_end": format_local_datetime(self.probe_end),
        }


@dataclass
class MailboxTarget:
    user_id: str
    display_name: str = ""
    calendar_id: str = ""

    def label(self) -> str:
        return self.display_name or self.user_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def transaction_id_for(event: EventDescriptor, mailbox: MailboxTarget) -> str:
    digest = hashlib.sha1(f"{mailbox.user_id}|{event.identity_key()}".encode("utf-8")).hexdigest()  # nosec B324
    return f"groupcal-{digest}"


@dataclass
class SyncResult:
    event: EventDescriptor
    mailbox: MailboxTarget
    outcome: str
    message: str = ""
    event_id: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome != OUTCOME_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "mailbox": self.mailbox.user_id,
            "outcome": self.outcome,
            "message": self.message,
            "event_id": self.event_id,
        }


@dataclass
class RunReport:
    status: str
    message: str
    duration_ms: int
    results: list[SyncResult] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def counts(self) -> dict[str, int]:
        totals = {outcome: 0 for outcome in OUTCOMES}
        for result in self.results:
            totals[result.outcome] = totals.get(result.outcome, 0) + 1
        return totals

    @property
    def failed(self) -> int:
        return self.counts()[OUTCOME_FAILED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "counts": self.counts(),
            "results": [result.to_dict() for result in self.results],
            "run_at": self.run_at.isoformat(),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
