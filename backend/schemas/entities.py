from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Union


class PIICategory(str, Enum):
    """Closed set of PII categories. Values are the placeholder names."""

    PHONE = "PHONE"
    EMAIL = "EMAIL"
    NATIONAL_ID = "NATIONALID"
    BANK_CARD = "BANKCARD"
    IP_ADDRESS = "IPADDRESS"
    API_KEY = "APIKEY"


@dataclass(frozen=True)
class PIIMatch:
    """A single detected PII span. Offsets are half-open ``str`` indices."""

    category: PIICategory
    value: str
    start: int
    end: int

    def overlaps(self, other: PIIMatch) -> bool:
        return self.start < other.end and self.end > other.start


@dataclass(frozen=True)
class ScanResult:
    """Non-overlapping matches, ascending by start offset."""

    matches: tuple[PIIMatch, ...] = ()

    @property
    def has_pii(self) -> bool:
        return bool(self.matches)


# placeholder -> original value
MaskMapping = dict[str, str]


@dataclass
class MaskResult:
    """Result of masking a text."""

    masked: str
    mapping: MaskMapping = field(default_factory=dict)
    scan_result: ScanResult = field(default_factory=ScanResult)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    INVALID_CONFIG = "INVALID_CONFIG"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    TIMEOUT = "TIMEOUT"
    DECODE_ERROR = "DECODE_ERROR"
    CANCELLED = "CANCELLED"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    API_ERROR = "API_ERROR"


@dataclass(frozen=True)
class Delta:
    text: str


@dataclass(frozen=True)
class Done:
    final_text: str


@dataclass(frozen=True)
class StreamError:
    kind: ErrorKind
    message: str


StreamEvent = Union[Delta, Done, StreamError]


@dataclass
class RequestHandle:
    """The orchestrator's record of one completion request.

    ``generation`` is minted by the orchestrator, so a caller re-using a
    request id still gets a handle that compares unequal to the old one.
    """

    request_id: str
    generation: int
    cancelled: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def same_request(self, other: RequestHandle) -> bool:
        return (self.request_id, self.generation) == (other.request_id, other.generation)


# ---------------------------------------------------------------------------
# Content intent
# ---------------------------------------------------------------------------


class ContentType(str, Enum):
    JSON = "json"
    CODE = "code"
    TABLE = "table"
    LIST = "list"
    PROSE = "prose"
    UNKNOWN = "unknown"


class ActionType(str, Enum):
    LOCAL_RULE = "LocalRule"
    AI_PROMPT = "AIPrompt"


@dataclass
class ActionChip:
    """A suggested follow-up action for a piece of captured text."""
    id: str
    label: str
    action_type: ActionType
    payload: str
    shortcut: str | None = None
