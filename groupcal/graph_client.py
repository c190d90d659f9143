from __future__ import annotations

import logging
import threading
import time
from typing import Any, Iterator
from urllib.parse import quote

import requests
from azure.identity import ClientSecretCredential

from groupcal.errors import (
    AuthenticationError,
    CalendarNotFoundError,
    GraphRequestError,
    MembershipLookupError,
)
from groupcal.models import (
    DEFAULT_CALENDAR_NAME,
    EventDescriptor,
    GraphConfig,
    MailboxTarget,
    format_local_datetime,
)
from groupcal.query import EventFilter

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
USER_ODATA_TYPE = "#microsoft.graph.user"
TOKEN_REFRESH_MARGIN_SECONDS = 120


def _path_segment(value: str) -> str:
    return quote(str(value).strip(), safe="@")


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        code = str(error.get("code", "")).strip()
        message = str(error.get("message", "")).strip()
        return f"{code}: {message}" if code else message
    return response.text[:300]


class GraphService:
    """Explicit Microsoft Graph session shared by every call in a run."""

    def __init__(
        self,
        config: GraphConfig,
        timezone_name: str = "UTC",
        *,
        credential: Any = None,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.timezone_name = timezone_name
        self._credential = credential
        self._session = session
        self._token: str = ""
        self._token_expires_on: float = 0.0
        self._token_lock = threading.Lock()

    def __enter__(self) -> "GraphService":
        self.connect()
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def connect(self) -> None:
        if self._credential is None:
            if not self.config.is_complete():
                raise AuthenticationError("Graph config missing tenant_id/client_id/client_secret.")
            self._credential = ClientSecretCredential(
                tenant_id=self.config.tenant_id,
                client_id=self.config.client_id,
                client_secret=self.config.client_secret,
            )
        if self._session is None:
            self._session = requests.Session()
        self._refresh_token()
        logger.info("Authenticated to Microsoft Graph for tenant %s", self.config.tenant_id or "(injected)")

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
        self._token = ""
        self._token_expires_on = 0.0

    def _refresh_token(self) -> None:
        try:
            access_token = self._credential.get_token(GRAPH_SCOPE)
        except Exception as exc:
            raise AuthenticationError(f"Token acquisition failed: {type(exc).__name__}: {exc}") from exc
        self._token = access_token.token
        self._token_expires_on = float(access_token.expires_on)

    def _headers(self) -> dict[str, str]:
        if self._session is None:
            raise AuthenticationError("Graph session is not connected.")
        with self._token_lock:
            if time.time() + TOKEN_REFRESH_MARGIN_SECONDS >= self._token_expires_on:
                self._refresh_token()
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Prefer": f'outlook.timezone="{self.timezone_name}"',
        }

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}/{path.lstrip('/')}"

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        headers = self._headers()
        response = self._session.request(
            method,
            url,
            headers=headers,
            timeout=self.config.timeout_seconds,
            **kwargs,
        )
        if not response.ok:
            raise GraphRequestError(response.status_code, _error_message(response))
        if not response.content:
            return {}
        return response.json()

    def _paged(self, path: str, params: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        url: str | None = self._url(path)
        while url:
            payload = self._request("GET", url, params=params)
            for item in payload.get("value", []):
                yield item
            url = payload.get("@odata.nextLink")
            # nextLink already carries the query string.
            params = None

    def list_group_members(self, group_id: str) -> list[MailboxTarget]:
        if not group_id:
            raise MembershipLookupError("Group id is required.")
        members: list[MailboxTarget] = []
        try:
            for item in self._paged(
                f"groups/{_path_segment(group_id)}/members",
                params={"$select": "id,displayName,userPrincipalName,mail"},
            ):
                if item.get("@odata.type", USER_ODATA_TYPE) != USER_ODATA_TYPE:
                    continue
                user_id = str(item.get("id", "")).strip()
                if not user_id:
                    continue
                members.append(
                    MailboxTarget(
                        user_id=user_id,
                        display_name=str(item.get("userPrincipalName") or item.get("displayName") or "").strip(),
                    )
                )
        except (GraphRequestError, requests.RequestException) as exc:
            raise MembershipLookupError(f"Group {group_id} lookup failed: {exc}") from exc
        logger.info("Group %s has %d user members", group_id, len(members))
        return members

    def resolve_default_calendar(self, user_id: str, calendar_name: str = DEFAULT_CALENDAR_NAME) -> str:
        wanted = calendar_name.strip().casefold()
        for item in self._paged(f"users/{_path_segment(user_id)}/calendars", params={"$select": "id,name"}):
            if str(item.get("name", "")).strip().casefold() == wanted:
                return str(item["id"])
        raise CalendarNotFoundError(f"Calendar '{calendar_name}' not found for {user_id}")

    def find_events(self, user_id: str, calendar_id: str, event_filter: EventFilter) -> list[dict[str, Any]]:
        return list(
            self._paged(
                f"users/{_path_segment(user_id)}/calendars/{_path_segment(calendar_id)}/events",
                params={
                    "$filter": event_filter.to_odata(),
                    "$select": "id,subject,start,end,isAllDay",
                    "$top": 50,
                },
            )
        )

    def build_event_body(self, event: EventDescriptor, transaction_id: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "subject": event.subject,
            "start": {"dateTime": format_local_datetime(event.start), "timeZone": self.timezone_name},
            "end": {"dateTime": format_local_datetime(event.end), "timeZone": self.timezone_name},
            "isAllDay": True,
            "showAs": "free",
            "isReminderOn": False,
        }
        if transaction_id:
            body["transactionId"] = transaction_id
        return body

    def create_event(
        self,
        user_id: str,
        calendar_id: str,
        event: EventDescriptor,
        transaction_id: str | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            self._url(f"users/{_path_segment(user_id)}/calendars/{_path_segment(calendar_id)}/events"),
            json=self.build_event_body(event, transaction_id),
        )
