import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from flowci.sinks import HttpEventSink, JsonlEventSink
from flowci.state import TransitionEvent


def _event(run_id="run-1"):
    return TransitionEvent(
        seq=1, run_id=run_id, kind="warning", instance="build", job="build",
        status="running", reason="disk almost full",
    )


@pytest.fixture
def collector():
    received = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            body = self.rfile.read(int(self.headers["Content-Length"]))
            received.append((self.path, json.loads(body)))
            self.send_response(201)
            self.end_headers()

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}/api/", received
    server.shutdown()
    server.server_close()


def test_jsonl_sink_appends_one_line_per_event(tmp_path):
    path = tmp_path / "logs" / "events.jsonl"
    sink = JsonlEventSink(path)
    event = _event()
    sink(event)
    sink(event)

    lines = path.read_text().splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["reason"] == "disk almost full"


def test_http_sink_posts_events(collector):
    url, received = collector
    sink = HttpEventSink(url)
    sink(_event("run-7"))

    assert sink.failures == 0
    path, body = received[0]
    assert path == "/api/runs/run-7/events"
    assert body["kind"] == "warning"


def test_http_sink_counts_unreachable_collector():
    sink = HttpEventSink("http://127.0.0.1:1", timeout=1.0)
    sink(_event())
    assert sink.failures == 1
