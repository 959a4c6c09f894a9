"""
Line classification for captured bot output.

A classifier is an ordered table of rules. Each rule owns a matcher that
either returns the fields for its event or None; the first rule that yields
an event wins, so a line is assigned to at most one category.

    classifier = LineClassifier()
    event = classifier.classify("ERROR: invalid token", timestamp)
    event.category   # "error"
    event.severity   # "auth"
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from botwatch.config import DEFAULT_TOOL_NAMES

MENTION_MARKER = "[MENTION DETECTED]"
TOOL_CALL_MARKER = "tool_calls"
WARNING_MARKERS = ("WARN", "Warning", "⚠")

_MENTION_RE = re.compile(r"(\w+) mentioned the bot in #([\w\-]+)")
_ERROR_RE = re.compile(r"error", re.IGNORECASE)
_ERROR_WORDS_RE = re.compile(r"\b(failed|failure|exception)\b", re.IGNORECASE)

# First match wins; anything unmatched is "general". Keywords match as word
# prefixes so "crashed" or "tokens" still count.
SEVERITY_RULES: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("critical", re.compile(r"\b(critical|fatal|crash)", re.IGNORECASE)),
    ("auth", re.compile(r"\b(authentication|token|permission)", re.IGNORECASE)),
    ("network", re.compile(r"\b(network|timeout|connection)", re.IGNORECASE)),
    ("git", re.compile(r"\b(git|push|commit)", re.IGNORECASE)),
    ("discord", re.compile(r"\b(discord|api|rate.?limit)", re.IGNORECASE)),
)
SEVERITIES = tuple(name for name, _ in SEVERITY_RULES) + ("general",)


# ── Events ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Mention:
    timestamp: str
    user: str
    channel: str
    raw: str = ""
    category: str = field(default="mention", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ToolCall:
    timestamp: str
    raw: str
    category: str = field(default="tool_call", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ErrorEvent:
    timestamp: str
    raw: str
    severity: str = "general"
    detail: Optional[str] = None
    category: str = field(default="error", init=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.detail is None:
            data.pop("detail")
        return data


@dataclass(frozen=True)
class WarningEvent:
    timestamp: str
    raw: str
    data: Optional[Dict[str, Any]] = None
    category: str = field(default="warning", init=False)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if not self.data:
            result.pop("data")
        return result


ClassifiedEvent = Union[Mention, ToolCall, ErrorEvent, WarningEvent]


# ── Severity ──────────────────────────────────────────────────────────────────

def categorize_error(text: str) -> str:
    """Assign an error severity from the first matching severity rule."""
    for severity, pattern in SEVERITY_RULES:
        if pattern.search(text or ""):
            return severity
    return "general"


# ── Rules ─────────────────────────────────────────────────────────────────────

Matcher = Callable[[str], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table.

    ``matcher`` returns the extra constructor fields for ``factory`` when the
    line belongs to this category, or None to let lower rules have a go.
    """
    category: str
    matcher: Matcher
    factory: Callable[..., ClassifiedEvent]


def match_mention(line: str) -> Optional[Dict[str, Any]]:
    if MENTION_MARKER not in line:
        return None
    m = _MENTION_RE.search(line)
    if not m:
        return None
    return {"user": m.group(1), "channel": m.group(2)}


def tool_call_matcher(tool_names: Iterable[str]) -> Matcher:
    names = [n for n in tool_names if n]
    pattern = re.compile(r"\b(" + "|".join(re.escape(n) for n in names) + r")\b") if names else None

    def match(line: str) -> Optional[Dict[str, Any]]:
        if TOOL_CALL_MARKER in line:
            return {}
        if pattern is not None and pattern.search(line):
            return {}
        return None

    return match


def match_error(line: str) -> Optional[Dict[str, Any]]:
    if _ERROR_RE.search(line) or _ERROR_WORDS_RE.search(line):
        return {"severity": categorize_error(line)}
    return None


def match_warning(line: str) -> Optional[Dict[str, Any]]:
    if any(marker in line for marker in WARNING_MARKERS):
        return {}
    return None


def default_rules(tool_names: Sequence[str] = DEFAULT_TOOL_NAMES) -> List[ClassificationRule]:
    return [
        ClassificationRule("mention", match_mention, Mention),
        ClassificationRule("tool_call", tool_call_matcher(tool_names), ToolCall),
        ClassificationRule("error", match_error, ErrorEvent),
        ClassificationRule("warning", match_warning, WarningEvent),
    ]


class LineClassifier:
    """Stateless classifier over a rule table.

    The table is a plain list: append a ClassificationRule to add a
    category, or pass ``rules`` to replace the defaults wholesale.
    """

    def __init__(self, rules: Optional[Sequence[ClassificationRule]] = None,
                 tool_names: Sequence[str] = DEFAULT_TOOL_NAMES):
        self.rules: List[ClassificationRule] = list(rules) if rules is not None else default_rules(tool_names)

    def classify(self, line: str, timestamp: str) -> Optional[ClassifiedEvent]:
        line = (line or "").strip()
        if not line:
            return None
        for rule in self.rules:
            fields = rule.matcher(line)
            if fields is not None:
                return rule.factory(timestamp=timestamp, raw=line, **fields)
        return None

    def categories(self) -> List[str]:
        return [rule.category for rule in self.rules]
