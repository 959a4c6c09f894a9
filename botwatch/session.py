"""Session identity, timing, and the in-memory state accumulated during a run."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from botwatch.classifier import ClassifiedEvent, ErrorEvent, Mention, ToolCall, WarningEvent

SESSION_PREFIX = "bot-session-"
SESSION_ID_PATTERN = r"bot-session-\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_utc(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2025-03-01T12:00:00.000Z."""
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def generate_session_id(start: datetime) -> str:
    """Filesystem-safe id derived from the start time (second resolution)."""
    dt = start if start.tzinfo else start.replace(tzinfo=timezone.utc)
    return SESSION_PREFIX + dt.astimezone(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")


def format_duration(ms: float) -> str:
    """Largest unit first, leading zero units omitted: 3725000 -> '1h 2m 5s'."""
    seconds = int(max(0, ms) // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


@dataclass
class Session:
    id: str
    start: datetime
    end: Optional[datetime] = None
    exit_code: Optional[int] = None
    exit_reason: Optional[str] = None

    @classmethod
    def begin(cls, now: Optional[datetime] = None) -> "Session":
        start = now or utcnow()
        return cls(id=generate_session_id(start), start=start)

    @property
    def closed(self) -> bool:
        return self.end is not None

    def close(self, exit_code: int, exit_reason: str, now: Optional[datetime] = None) -> None:
        if self.closed:
            raise RuntimeError(f"Session {self.id} already closed")
        self.end = now or utcnow()
        self.exit_code = exit_code
        self.exit_reason = exit_reason

    @property
    def duration_ms(self) -> float:
        end = self.end or utcnow()
        return max(0.0, (end - self.start).total_seconds() * 1000)


@dataclass
class LogLine:
    timestamp: str
    stream: str
    text: str

    def render(self) -> str:
        return f"{self.timestamp} [{self.stream.upper()}] {self.text}"


@dataclass
class HealthSnapshot:
    """Activity counter plus the time of the most recent line."""
    session_start: datetime
    activity_count: int = 0
    last_activity: Optional[datetime] = None

    def record(self, at: Optional[datetime] = None) -> None:
        self.activity_count += 1
        self.last_activity = at or utcnow()

    def time_since_activity(self, now: Optional[datetime] = None) -> float:
        """Seconds since the last line, or since session start if none yet."""
        ref = self.last_activity or self.session_start
        return max(0.0, ((now or utcnow()) - ref).total_seconds())


@dataclass
class EventLog:
    mentions: List[Mention] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    errors: List[ErrorEvent] = field(default_factory=list)
    warnings: List[WarningEvent] = field(default_factory=list)

    def add(self, event: ClassifiedEvent) -> None:
        if isinstance(event, Mention):
            self.mentions.append(event)
        elif isinstance(event, ToolCall):
            self.tool_calls.append(event)
        elif isinstance(event, ErrorEvent):
            self.errors.append(event)
        elif isinstance(event, WarningEvent):
            self.warnings.append(event)
        else:
            raise TypeError(f"Unknown event type: {type(event).__name__}")

    def errors_by_severity(self) -> Dict[str, int]:
        return dict(Counter(e.severity or "general" for e in self.errors))

    def critical_count(self) -> int:
        return sum(1 for e in self.errors if e.severity == "critical")

    def counts(self) -> Dict[str, Any]:
        return {
            "mentions": len(self.mentions),
            "toolCalls": len(self.tool_calls),
            "errors": len(self.errors),
            "warnings": len(self.warnings),
        }
