from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from groupcal.models import EventDescriptor, format_local_datetime


def quote_odata_string(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


@dataclass(frozen=True)
class EventFilter:
    """Range-plus-subject match for events already stored in a calendar."""

    start_ge: datetime
    end_le: datetime
    subject_eq: str

    @classmethod
    def probe_for(cls, event: EventDescriptor) -> "EventFilter":
        return cls(start_ge=event.probe_start, end_le=event.probe_end, subject_eq=event.subject)

    def to_odata(self) -> str:
        return " and ".join(
            [
                f"start/dateTime ge {quote_odata_string(format_local_datetime(self.start_ge))}",
                f"end/dateTime le {quote_odata_string(format_local_datetime(self.end_le))}",
                f"subject eq {quote_odata_string(self.subject_eq)}",
            ]
        )
