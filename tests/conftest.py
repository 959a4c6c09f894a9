"""
Shared fixtures for the botwatch test suite.
"""
import os
import sys
import socket
import subprocess
import textwrap
import time
import pytest
import requests

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from botwatch.config import SupervisorConfig  # noqa: E402


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "session-logs"


@pytest.fixture
def bot_script(tmp_path):
    """Write a tiny Python 'bot' and return the command line that runs it."""
    counter = {"n": 0}

    def make(source):
        counter["n"] += 1
        path = tmp_path / f"bot_{counter['n']}.py"
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return [sys.executable, "-u", str(path)]

    return make


@pytest.fixture
def make_config(log_dir):
    """SupervisorConfig with short timings and no dashboard."""
    def make(command, **overrides):
        cfg = SupervisorConfig(
            command=list(command),
            log_dir=str(log_dir),
            gui_enabled=False,
            startup_timeout=10.0,
            grace_period=2.0,
            health_interval=60.0,
            drain_timeout=2.0,
        )
        for key, value in overrides.items():
            setattr(cfg, key, value)
        return cfg

    return make


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def is_server_running(base_url):
    """Check if the dashboard is reachable."""
    try:
        r = requests.get(f"{base_url}/api/health", timeout=2)
        return r.status_code == 200
    except requests.exceptions.ConnectionError:
        return False


def start_dashboard(log_dir, port, session_id=None):
    """Start dashboard.py on ``port`` and wait until it answers."""
    dashboard = os.path.join(REPO_ROOT, "dashboard.py")
    env = os.environ.copy()
    env.pop("SESSION_ID", None)
    if session_id:
        env["SESSION_ID"] = session_id
    proc = subprocess.Popen(
        [sys.executable, dashboard, "--port", str(port), "--log-dir", str(log_dir), "--no-debug"],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        env=env,
    )
    base_url = f"http://127.0.0.1:{port}"

    # Wait up to 20 seconds for the server to be ready
    for _ in range(40):
        time.sleep(0.5)
        if is_server_running(base_url):
            break
        if proc.poll() is not None:
            break
    else:
        proc.terminate()
        pytest.fail("Dashboard failed to start within 20s")

    if proc.poll() is not None:
        stderr_out = proc.stderr.read(2000) if proc.stderr else b""
        pytest.fail(f"Dashboard exited early. stderr: {stderr_out.decode(errors='replace')}")
    return proc, base_url
