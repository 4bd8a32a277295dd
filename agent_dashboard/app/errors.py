# agent_dashboard/app/errors.py
from typing import Any, Optional


class DashboardError(Exception):
    """Base class for every error the dashboard engine knows how to handle."""


class SourceError(DashboardError):
    """A provider, peer or relay fetch failed or timed out."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message


class MergeConflict(DashboardError):
    """Two records share a dedup key but disagree on a field that should not change.

    Resolved by freshest-wins and logged; the canonicalizer never raises it.
    """

    def __init__(self, key: str, field: str, kept: Any, dropped: Any):
        super().__init__(f"Merge conflict on {key}.{field}: kept {kept!r}, dropped {dropped!r}")
        self.key = key
        self.field = field
        self.kept = kept
        self.dropped = dropped


class DeliveryError(DashboardError):
    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel
        self.message = message


class TransportError(DashboardError):
    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.message = message
        self.status_code = status_code


class ConversationError(DashboardError):
    AGENT_NOT_FOUND = "agent_not_found"
    CONVERSATION_UNAVAILABLE = "conversation_unavailable"
    STORE_UNREACHABLE = "store_unreachable"
    MALFORMED_TRANSCRIPT = "malformed_transcript"

    STATUS_CODES = {
        AGENT_NOT_FOUND: 404,
        CONVERSATION_UNAVAILABLE: 404,
        STORE_UNREACHABLE: 502,
        MALFORMED_TRANSCRIPT: 502,
    }

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return self.STATUS_CODES.get(self.code, 500)
