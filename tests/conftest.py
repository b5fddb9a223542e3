"""
Pytest fixtures for swarm agent tests.

Runs an in-process coordinator stub (HTTP) and a discovery responder (UDP)
on random local ports for isolated testing.
"""
import sys
import socket
import shutil
import tempfile
import threading
from pathlib import Path
from contextlib import closing
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


def find_free_port(kind: int = socket.SOCK_STREAM) -> int:
    """Find a free local port (TCP by default)."""
    with closing(socket.socket(socket.AF_INET, kind)) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


class CoordinatorState:
    """What the coordinator stub knows and what it has been asked."""

    def __init__(self):
        self.secret = "s3cr3t"
        self.crumb = ("Jenkins-Crumb", "abc123")
        self.coordinator_header = True
        self.assigned_name = None
        self.failures = {}
        self.nodes = {}
        self.requests = []
        self.lock = threading.Lock()

    def calls(self, method: str, path: str):
        """Recorded (params, headers) for one endpoint."""
        with self.lock:
            return [(params, headers) for m, p, params, headers in self.requests
                    if m == method and p == path]


def _make_handler(state: CoordinatorState):
    class Handler(BaseHTTPRequestHandler):
        def log_message(self, format, *args):
            pass

        def _reply(self, status: int, body: str = "", headers=None):
            data = body.encode('utf-8')
            self.send_response(status)
            for name, value in (headers or {}).items():
                self.send_header(name, value)
            self.send_header('Content-Length', str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def _record(self, method):
            parsed = urlparse(self.path)
            params = parse_qs(parsed.query, keep_blank_values=True)
            with state.lock:
                state.requests.append((method, parsed.path, params, dict(self.headers)))
            return parsed.path, params

        def do_GET(self):
            path, params = self._record('GET')

            if path in state.failures:
                return self._reply(state.failures[path], "stub failure")

            if path == '/':
                headers = {'X-Jenkins': '2.400'} if state.coordinator_header else {}
                return self._reply(200, "<html/>", headers)

            if path == '/plugin/swarm/slaveInfo':
                return self._reply(
                    200, f"<slaveInfo><swarmSecret>{state.secret}</swarmSecret></slaveInfo>"
                )

            if path == '/crumbIssuer/api/xml':
                if state.crumb is None:
                    return self._reply(404, "no crumb issuer")
                return self._reply(200, f"{state.crumb[0]}:{state.crumb[1]}")

            if path == '/plugin/swarm/getSlaveLabels':
                name = params.get('name', [''])[0]
                with state.lock:
                    labels = sorted(state.nodes.get(name, set()))
                return self._reply(
                    200, f"<labelResponse><labels>{' '.join(labels)}</labels></labelResponse>"
                )

            self._reply(404, "not found")

        def do_POST(self):
            path, params = self._record('POST')

            length = int(self.headers.get('Content-Length') or 0)
            if length:
                self.rfile.read(length)

            if path in state.failures:
                return self._reply(state.failures[path], "stub failure")

            if state.crumb is not None and self.headers.get(state.crumb[0]) != state.crumb[1]:
                return self._reply(403, "No valid crumb was included in the request")

            name = params.get('name', [''])[0]
            labels = set(params.get('labels', [''])[0].split())

            if path == '/plugin/swarm/createSlave':
                if params.get('secret', [''])[0] != state.secret:
                    return self._reply(403, "bad secret")
                final = state.assigned_name or name
                with state.lock:
                    state.nodes[final] = labels | {'swarm'}
                return self._reply(200, f"name={final}\n")

            if path == '/plugin/swarm/addSlaveLabels':
                with state.lock:
                    state.nodes.setdefault(name, set()).update(labels)
                return self._reply(200)

            if path == '/plugin/swarm/removeSlaveLabels':
                with state.lock:
                    state.nodes.setdefault(name, set()).difference_update(labels)
                return self._reply(200)

            self._reply(404, "not found")

    return Handler


@pytest.fixture
def coordinator_server():
    """
    Start a coordinator stub for testing.

    Yields:
        dict with 'url' and 'state' keys
    """
    state = CoordinatorState()
    server = ThreadingHTTPServer(('127.0.0.1', 0), _make_handler(state))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield {
        'url': f"http://127.0.0.1:{server.server_address[1]}/",
        'state': state,
    }

    # Cleanup
    server.shutdown()
    server.server_close()
    thread.join(timeout=2)


@pytest.fixture
def udp_responder():
    """
    Start a discovery responder answering every datagram with canned replies.

    Yields:
        dict with 'port', 'replies' (list of bytes, editable) and 'received' keys
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    sock.settimeout(0.1)
    info = {'port': sock.getsockname()[1], 'replies': [], 'received': []}
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                data, sender = sock.recvfrom(2048)
            except socket.timeout:
                continue
            except OSError:
                break
            info['received'].append(data)
            for reply in list(info['replies']):
                sock.sendto(reply, sender)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()

    yield info

    # Cleanup
    stop.set()
    thread.join(timeout=2)
    sock.close()


@pytest.fixture
def temp_work_dir():
    """Create a temporary work directory for tests."""
    work_dir = tempfile.mkdtemp(prefix="swarm_agent_test_")
    yield work_dir
    shutil.rmtree(work_dir, ignore_errors=True)


@pytest.fixture
def sample_config_yaml() -> str:
    """Sample agent configuration."""
    return """
agent:
  url: http://ci.example.com:8080/jenkins
  name: build-01
  executors: 4
  labels: [linux, "docker x86_64"]
  mode: exclusive
  tool_locations:
    jdk17: /opt/jdk17
  retry:
    retry: 5
    backoff: Linear
    interval: 10
    max_interval: 120
  security:
    username: agent
    password_env_variable: SWARM_TEST_PASSWORD
  logging:
    level: DEBUG
"""
