import http.server
import queue
import socket
import threading
import time

import pytest

from gateway import Settings
from main import create_app


class FakeUpstream:
    """Threaded HTTP server standing in for the backend data service.

    Responses are served from a queue first, then fall back to the default
    ``status``/``body``/``delay`` attributes.
    """

    def __init__(self):
        self.status = 200
        self.body = b'{"x": 1}'
        self.content_type = "application/json"
        self.delay = 0.0
        # seconds between body bytes; 0 sends the body in one write
        self.drip = 0.0
        self.seen = []
        self._queued = queue.Queue()
        self._server = None
        self._thread = None
        self.port = 0

    @property
    def url(self):
        return f"http://127.0.0.1:{self.port}"

    def enqueue(self, status, body, delay=0.0, content_type="application/json"):
        self._queued.put((status, body, delay, content_type))

    def next_response(self):
        try:
            return self._queued.get_nowait()
        except queue.Empty:
            return self.status, self.body, self.delay, self.content_type

    def start(self):
        upstream = self

        class Handler(http.server.BaseHTTPRequestHandler):
            def do_GET(self):
                upstream.seen.append({"path": self.path, "headers": dict(self.headers)})
                status, body, delay, content_type = upstream.next_response()
                if delay:
                    time.sleep(delay)
                try:
                    self.send_response(status)
                    self.send_header("Content-Type", content_type)
                    self.send_header("Content-Length", str(len(body)))
                    self.end_headers()
                    if upstream.drip:
                        for i in range(len(body)):
                            self.wfile.write(body[i:i + 1])
                            self.wfile.flush()
                            time.sleep(upstream.drip)
                    else:
                        self.wfile.write(body)
                except (BrokenPipeError, ConnectionResetError):
                    # client gave up waiting
                    pass

            def log_message(self, format, *args):  # noqa: A002, ARG002
                pass

        class Server(http.server.ThreadingHTTPServer):
            allow_reuse_address = True
            daemon_threads = True

        self._server = Server(("127.0.0.1", 0), Handler)
        self.port = int(self._server.server_port)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self):
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None


@pytest.fixture
def upstream():
    server = FakeUpstream()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def refused_url():
    """URL of a local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}"


@pytest.fixture
def make_client():
    def _make(**overrides):
        overrides.setdefault("rate_limit_enabled", False)
        app = create_app(Settings(**overrides))
        app.config["TESTING"] = True
        return app.test_client()

    return _make
