#!/usr/bin/env python3
"""
botwatch dashboard - browse supervised bot sessions 🤖

Small Flask app started next to the bot by `botwatch` (or on its own) that
serves the session log directory as JSON.

Usage:
    botwatch-dashboard                          # port $GUI_PORT or 3001
    botwatch-dashboard --port 4000
    botwatch-dashboard --log-dir ./session-logs
    BOTWATCH_LOG_DIR=./session-logs botwatch-dashboard
"""

import argparse
import json
import os
import re
from collections import deque
from datetime import datetime, timezone

from flask import Flask, jsonify, request, Response

from botwatch import __version__
from botwatch.session import SESSION_ID_PATTERN

app = Flask(__name__)

# ── Configuration (overridable via CLI/env) ──────────────────────────────
LOG_DIR = os.environ.get("BOTWATCH_LOG_DIR", "session-logs")
CURRENT_SESSION = os.environ.get("SESSION_ID", "")
STARTED_AT = datetime.now(timezone.utc)
MAX_LOG_LINES = 1000

_SESSION_RE = re.compile(rf"^{SESSION_ID_PATTERN}$")
_ARTIFACT_RE = re.compile(rf"^({SESSION_ID_PATTERN})-(raw\.log|report\.json|summary\.md)$")


def _artifact(session_id, kind):
    """Path of one artifact, or None if the id is malformed."""
    if not _SESSION_RE.match(session_id or ""):
        return None
    suffix = {"raw": "-raw.log", "report": "-report.json", "summary": "-summary.md"}[kind]
    return os.path.join(LOG_DIR, session_id + suffix)


def _list_sessions():
    """Every session that left at least one artifact, newest first."""
    sessions = {}
    try:
        names = os.listdir(LOG_DIR)
    except OSError:
        return []
    for name in names:
        m = _ARTIFACT_RE.match(name)
        if not m:
            continue
        sid, kind = m.group(1), m.group(2)
        entry = sessions.setdefault(sid, {'id': sid, 'hasRawLog': False, 'hasReport': False, 'hasSummary': False})
        entry[{'raw.log': 'hasRawLog', 'report.json': 'hasReport', 'summary.md': 'hasSummary'}[kind]] = True

    result = []
    for sid in sorted(sessions, reverse=True):
        entry = sessions[sid]
        entry['active'] = sid == CURRENT_SESSION and not entry['hasReport']
        if entry['hasReport']:
            report = _load_report(sid)
            if report:
                entry['exitCode'] = report.get('session', {}).get('exitCode')
                entry['exitReason'] = report.get('session', {}).get('exitReason')
                entry['duration'] = report.get('session', {}).get('duration')
                entry['summary'] = report.get('summary')
        result.append(entry)
    return result


def _load_report(session_id):
    path = _artifact(session_id, 'report')
    if not path or not os.path.exists(path):
        return None
    try:
        with open(path, encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


def _tail(path, count):
    with open(path, encoding='utf-8', errors='replace') as f:
        return [line.rstrip('\n') for line in deque(f, maxlen=count)]


@app.route('/api/health')
def api_health():
    """Liveness plus which session this dashboard belongs to."""
    uptime = (datetime.now(timezone.utc) - STARTED_AT).total_seconds()
    return jsonify({
        'status': 'ok',
        'version': __version__,
        'session': CURRENT_SESSION or None,
        'logDir': LOG_DIR,
        'logDirExists': os.path.isdir(LOG_DIR),
        'uptimeSeconds': int(uptime),
    })


@app.route('/api/sessions')
def api_sessions():
    return jsonify({'sessions': _list_sessions(), 'current': CURRENT_SESSION or None})


@app.route('/api/sessions/<session_id>')
def api_session_report(session_id):
    """Structured report for one finished session."""
    if not _SESSION_RE.match(session_id):
        return jsonify({'error': 'Invalid session id'}), 400
    report = _load_report(session_id)
    if report is None:
        return jsonify({'error': 'Report not found'}), 404
    return jsonify(report)


@app.route('/api/sessions/<session_id>/summary')
def api_session_summary(session_id):
    if not _SESSION_RE.match(session_id):
        return jsonify({'error': 'Invalid session id'}), 400
    path = _artifact(session_id, 'summary')
    if not os.path.exists(path):
        return jsonify({'error': 'Summary not found'}), 404
    with open(path, encoding='utf-8') as f:
        return Response(f.read(), mimetype='text/markdown')


@app.route('/api/logs')
def api_logs():
    """Tail of a session's raw log (defaults to the running session)."""
    try:
        lines_count = int(request.args.get('lines', 100))
    except ValueError:
        return jsonify({'error': 'lines must be an integer'}), 400
    lines_count = max(1, min(lines_count, MAX_LOG_LINES))

    session_id = request.args.get('session') or CURRENT_SESSION
    if not session_id:
        sessions = [s for s in _list_sessions() if s['hasRawLog']]
        session_id = sessions[0]['id'] if sessions else ''
    if not session_id:
        return jsonify({'lines': [], 'session': None})

    path = _artifact(session_id, 'raw')
    if path is None:
        return jsonify({'error': 'Invalid session id'}), 400
    if not os.path.exists(path):
        return jsonify({'lines': [], 'session': session_id})
    return jsonify({'lines': _tail(path, lines_count), 'session': session_id})


BANNER = r"""
  _           _                 _       _
 | |__   ___ | |___      ____ _| |_ ___| |__
 | '_ \ / _ \| __\ \ /\ / / _` | __/ __| '_ \
 | |_) | (_) | |_ \ V  V / (_| | || (__| | | |
 |_.__/ \___/ \__| \_/\_/ \__,_|\__\___|_| |_|
                          v{version}

  🤖  Every bot session, on the record
"""


def main(argv=None):
    global LOG_DIR, CURRENT_SESSION
    parser = argparse.ArgumentParser(
        description="botwatch dashboard - browse supervised bot sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Environment variables:\n"
               "  GUI_PORT           Port (default: 3001)\n"
               "  BOTWATCH_LOG_DIR   Session log directory (default: session-logs)\n"
               "  SESSION_ID         Session currently being recorded\n"
    )
    try:
        default_port = int(os.environ.get('GUI_PORT', 3001))
    except ValueError:
        default_port = 3001
    parser.add_argument('--port', '-p', type=int, default=default_port, help=f'Port (default: {default_port})')
    parser.add_argument('--host', '-H', type=str, default='127.0.0.1', help='Host (default: 127.0.0.1)')
    parser.add_argument('--log-dir', '-l', type=str, help='Session log directory')
    parser.add_argument('--debug', dest='debug', action='store_true', default=False, help='Enable debug mode with auto-reload')
    parser.add_argument('--no-debug', dest='debug', action='store_false', help='Disable debug mode and auto-reload (default)')
    parser.add_argument('--version', '-v', action='version', version=f'botwatch {__version__}')

    args = parser.parse_args(argv)
    if args.log_dir:
        LOG_DIR = os.path.expanduser(args.log_dir)
    CURRENT_SESSION = os.environ.get('SESSION_ID', CURRENT_SESSION)

    print(BANNER.format(version=__version__))
    print(f"  Logs:       {LOG_DIR}")
    print(f"  Session:    {CURRENT_SESSION or '(none)'}")
    print(f"  Mode:       {'🛠️  Dev (auto-reload ON)' if args.debug else '🚀 Prod (auto-reload OFF)'}")
    print(f"  → http://localhost:{args.port}")
    print()

    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=args.debug, threaded=True)


if __name__ == '__main__':
    main()
