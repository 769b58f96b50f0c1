"""Pytest configuration for the backend tests.

Makes ``backend/app`` importable (the app uses flat imports such as
``from core.config import config``) and provides a fake native server
executable plus fast supervision settings.
"""

import os
import stat
import sys
import textwrap

import pytest

APP_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "app")

if APP_DIR not in sys.path:
    sys.path.insert(0, APP_DIR)

from core.config import ServerSettings, config  # noqa: E402


FAKE_BACKEND_SOURCE = textwrap.dedent('''
    import argparse
    import base64
    import json
    import os
    import sys
    from http.server import BaseHTTPRequestHandler, HTTPServer

    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, required=True)
    args, _ = parser.parse_known_args()

    spawn_log = os.environ.get("FAKE_BACKEND_SPAWN_LOG")
    if spawn_log:
        with open(spawn_log, "a") as f:
            f.write(f"{os.getpid()}\\n")

    if os.environ.get("FAKE_BACKEND_MODE") == "crash":
        sys.stderr.write("fatal: model load failed\\n")
        sys.stderr.flush()
        sys.exit(3)

    health_file = os.environ.get("FAKE_BACKEND_HEALTH_FILE")


    class Handler(BaseHTTPRequestHandler):
        def log_message(self, *args):
            pass

        def _send(self, status, payload):
            body = json.dumps(payload).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self):
            if self.path != "/health":
                self._send(404, {})
                return
            healthy = True
            if health_file and os.path.exists(health_file):
                with open(health_file) as f:
                    healthy = f.read().strip() != "fail"
            self._send(200 if healthy else 503, {"status": "ok" if healthy else "error"})

        def do_POST(self):
            length = int(self.headers.get("Content-Length", 0))
            data = json.loads(self.rfile.read(length) or b"{}")
            if self.path == "/v1/chat/completions":
                last = data["messages"][-1]["content"]
                self._send(200, {"choices": [{"message": {"content": f" echo: {last} <|im_end|>"}}]})
            elif self.path == "/v1/transcribe":
                count = len(base64.b64decode(data["samples"])) // 4
                self._send(200, {"text": f"[{count}]", "elapsed": 0.25})
            else:
                self._send(404, {})


    HTTPServer(("127.0.0.1", args.port), Handler).serve_forever()
''')


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Keep temp/model directories inside the test's tmp_path."""
    monkeypatch.setattr(config, "TEMP_DIR", tmp_path / "temp")
    monkeypatch.setattr(config, "MODELS_ROOT", tmp_path / "models")
    monkeypatch.setattr(config, "LOG_DIR", tmp_path / "logs")
    monkeypatch.setattr(config, "LOG_FILE", tmp_path / "logs" / "app.log")


@pytest.fixture
def fake_backend(tmp_path):
    """An executable that behaves like a native model server."""
    path = tmp_path / "bin" / "fake-server"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n" + FAKE_BACKEND_SOURCE)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fast_settings():
    return ServerSettings(
        port_range=(18200, 18260),
        startup_timeout=15.0,
        startup_poll_interval=0.05,
        health_check_interval=0.05,
        health_check_timeout=0.5,
        health_failure_threshold=3,
        graceful_stop_timeout=2.0,
    )
