from __future__ import annotations


class GroupCalError(Exception):
    pass


class ConfigError(GroupCalError):
    pass


class AuthenticationError(GroupCalError):
    pass


class MembershipLookupError(GroupCalError):
    pass


class EventSourceError(GroupCalError):
    pass


class CalendarNotFoundError(GroupCalError):
    pass


class GraphRequestError(GroupCalError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message

    @property
    def transient(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500
