"""
Session report generation.

build_report() is a pure function of the session state; write_report()
persists the two artifacts next to the raw log:

    <log dir>/<session id>-report.json   full structured report
    <log dir>/<session id>-summary.md    capped, human-readable view

Both files are created exclusively and never rewritten.
"""
from __future__ import annotations

import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from botwatch.session import EventLog, HealthSnapshot, Session, format_duration, isoformat_utc, parse_timestamp

log = logging.getLogger("botwatch.report")

TOOL_CALL_WINDOW = 20
MARKDOWN_CAPS = {"mentions": 10, "toolCalls": 10, "errors": 5, "warnings": 5}
LINE_PREVIEW = 100


def report_paths(log_dir: Union[str, Path], session_id: str) -> Tuple[Path, Path]:
    base = Path(log_dir)
    return base / f"{session_id}-report.json", base / f"{session_id}-summary.md"


def raw_log_path(log_dir: Union[str, Path], session_id: str) -> Path:
    return Path(log_dir) / f"{session_id}-raw.log"


def events_per_minute(activity_count: int, duration_ms: float) -> int:
    if duration_ms <= 0:
        return 0
    return int(math.floor(activity_count / (duration_ms / 60000) + 0.5))


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count > 1 else ''}"


def generate_summary(exit_code: int, exit_reason: str, duration_ms: float, events: EventLog) -> str:
    status = "SUCCESS" if exit_code == 0 else "FAILURE"
    summary = f"{status}: Bot session lasted {format_duration(duration_ms)}"

    if events.mentions:
        summary += f", processed {_plural(len(events.mentions), 'mention')}"
    if events.tool_calls:
        summary += f", executed {_plural(len(events.tool_calls), 'tool call')}"
    if events.errors:
        summary += f", encountered {_plural(len(events.errors), 'error')}"
        critical = events.critical_count()
        if critical > 0:
            summary += f" ({critical} critical)"
    if exit_code != 0:
        summary += f". Exit reason: {exit_reason}"
    return summary


def build_report(
    session: Session,
    health: HealthSnapshot,
    events: EventLog,
    tool_call_window: int = TOOL_CALL_WINDOW,
) -> Dict[str, Any]:
    """Assemble the structured report for a closed session."""
    if not session.closed:
        raise ValueError(f"Session {session.id} is still open")
    duration_ms = session.duration_ms
    recent_tools = events.tool_calls[-tool_call_window:] if tool_call_window > 0 else []

    return {
        "session": {
            "id": session.id,
            "startTime": isoformat_utc(session.start),
            "endTime": isoformat_utc(session.end),
            "duration": format_duration(duration_ms),
            "durationMs": int(duration_ms),
            "exitCode": session.exit_code,
            "exitReason": session.exit_reason,
        },
        "activity": {
            "totalEvents": health.activity_count,
            "lastActivity": isoformat_utc(health.last_activity) if health.last_activity else None,
            "eventsPerMinute": events_per_minute(health.activity_count, duration_ms),
        },
        "mentions": {
            "total": len(events.mentions),
            "events": [m.to_dict() for m in events.mentions],
        },
        "toolCalls": {
            "total": len(events.tool_calls),
            "events": [t.to_dict() for t in recent_tools],
        },
        "errors": {
            "total": len(events.errors),
            "byCategory": events.errors_by_severity(),
            "events": [e.to_dict() for e in events.errors],
        },
        "warnings": {
            "total": len(events.warnings),
            "events": [w.to_dict() for w in events.warnings],
        },
        "summary": generate_summary(session.exit_code, session.exit_reason, duration_ms, events),
    }


# ── Markdown ──────────────────────────────────────────────────────────────────

def _local(ts: Optional[str], fmt: str) -> str:
    dt = parse_timestamp(ts or "")
    if dt is None:
        return ts or "None"
    return dt.astimezone().strftime(fmt)


def _preview(text: str) -> str:
    text = text or ""
    return text if len(text) <= LINE_PREVIEW else text[:LINE_PREVIEW] + "..."


def _bullets(items, render) -> str:
    return "\n".join(render(item) for item in items) or "- None"


def render_markdown(report: Dict[str, Any]) -> str:
    session = report["session"]
    activity = report["activity"]
    mentions = report["mentions"]
    tools = report["toolCalls"]
    errors = report["errors"]
    warnings = report["warnings"]
    ok = session["exitCode"] == 0

    mention_list = _bullets(
        mentions["events"][-MARKDOWN_CAPS["mentions"]:],
        lambda m: f"- **{m['user']}** in #{m['channel']} at {_local(m['timestamp'], '%H:%M:%S')}",
    )
    tool_list = _bullets(
        tools["events"][-MARKDOWN_CAPS["toolCalls"]:],
        lambda t: f"- {_local(t['timestamp'], '%H:%M:%S')}: {_preview(t['raw'])}",
    )
    error_list = _bullets(
        errors["events"][-MARKDOWN_CAPS["errors"]:],
        lambda e: f"- **{e['severity']}** at {_local(e['timestamp'], '%H:%M:%S')}: {_preview(e['raw'])}",
    )
    warning_list = _bullets(
        warnings["events"][-MARKDOWN_CAPS["warnings"]:],
        lambda w: f"- {_local(w['timestamp'], '%H:%M:%S')}: {_preview(w['raw'])}",
    )
    severity_line = ", ".join(f"{k}: {v}" for k, v in sorted(errors["byCategory"].items())) or "none"

    return f"""# Bot Session Report

## Session Details
- **ID**: {session['id']}
- **Duration**: {session['duration']}
- **Status**: {'✅ SUCCESS' if ok else '❌ FAILURE'}
- **Exit Code**: {session['exitCode']}
- **Exit Reason**: {session['exitReason']}
- **Start**: {_local(session['startTime'], '%Y-%m-%d %H:%M:%S')}
- **End**: {_local(session['endTime'], '%Y-%m-%d %H:%M:%S')}

## Activity Summary
- **Total Events**: {activity['totalEvents']}
- **Events/Minute**: {activity['eventsPerMinute']}
- **Last Activity**: {_local(activity['lastActivity'], '%Y-%m-%d %H:%M:%S') if activity['lastActivity'] else 'None'}

## Mentions ({mentions['total']})
{mention_list}

## Tool Calls ({tools['total']})
{tool_list}

## Errors ({errors['total']})
- **By severity**: {severity_line}

{error_list}

## Warnings ({warnings['total']})
{warning_list}

## Overall Summary
{report['summary']}

---
*Generated by botwatch*
"""


def write_report(report: Dict[str, Any], log_dir: Union[str, Path]) -> Tuple[Path, Path]:
    """Create both artifacts. Raises FileExistsError rather than overwrite."""
    json_path, md_path = report_paths(log_dir, report["session"]["id"])
    os.makedirs(str(log_dir), exist_ok=True)
    with open(json_path, "x", encoding="utf-8") as f:
        json.dump(report, f, indent=2, ensure_ascii=False)
    with open(md_path, "x", encoding="utf-8") as f:
        f.write(render_markdown(report))
    log.info(f"Session report saved: {json_path}, {md_path}")
    return json_path, md_path
