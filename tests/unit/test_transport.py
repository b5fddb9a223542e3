"""Unit tests for the command transport."""
import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from swarm_agent.models import AgentConfig, Candidate
from swarm_agent.retry_backoff import RetryError
from swarm_agent.transport import CommandTransport, TransportError

CANDIDATE = Candidate(url="http://ci.example.com/", secret="s3cr3t")


def make_transport(tmp_path, command):
    config = AgentConfig(fsroot=str(tmp_path), transport={'command': command})
    return CommandTransport(config)


class TestBuildCommand:
    """Tests for the command template."""

    def test_default_template(self, tmp_path):
        config = AgentConfig(fsroot=str(tmp_path))
        command = CommandTransport(config).build_command(CANDIDATE, "node-1")

        assert command[:3] == ["java", "-jar", "agent.jar"]
        assert command[command.index("-url") + 1] == "http://ci.example.com/"
        assert command[command.index("-name") + 1] == "node-1"
        assert command[command.index("-workDir") + 1] == str(tmp_path)

    def test_all_placeholders(self, tmp_path):
        transport = make_transport(tmp_path, ["agent", "{url}", "{name}", "{secret}", "{work_dir}"])
        assert transport.build_command(CANDIDATE, "n") == [
            "agent", "http://ci.example.com/", "n", "s3cr3t", str(tmp_path)
        ]

    def test_unknown_placeholder(self, tmp_path):
        transport = make_transport(tmp_path, ["agent", "{token}"])
        with pytest.raises(TransportError, match="Invalid transport command template"):
            transport.build_command(CANDIDATE, "n")


class TestConnect:
    """Tests for running the transport command."""

    def test_blocks_until_exit(self, tmp_path):
        marker = tmp_path / "ran"
        transport = make_transport(
            tmp_path,
            [sys.executable, "-c", f"open({str(marker)!r}, 'w').write('{{name}}')"]
        )

        transport.connect(CANDIDATE, "node-1")

        assert marker.read_text() == "node-1"

    def test_runs_in_fsroot(self, tmp_path):
        transport = make_transport(
            tmp_path, [sys.executable, "-c", "open('cwd-marker', 'w').close()"]
        )
        transport.connect(CANDIDATE, "node-1")
        assert (tmp_path / "cwd-marker").exists()

    def test_nonzero_exit_is_retryable(self, tmp_path):
        transport = make_transport(tmp_path, [sys.executable, "-c", "raise SystemExit(3)"])

        with pytest.raises(TransportError, match="exit code 3") as exc_info:
            transport.connect(CANDIDATE, "node-1")

        assert isinstance(exc_info.value, RetryError)

    def test_missing_program(self, tmp_path):
        transport = make_transport(tmp_path, [str(tmp_path / "no-such-agent")])
        with pytest.raises(TransportError, match="Failed to establish connection"):
            transport.connect(CANDIDATE, "node-1")

    def test_empty_command(self, tmp_path):
        transport = make_transport(tmp_path, [])
        with pytest.raises(TransportError, match="No transport command"):
            transport.connect(CANDIDATE, "node-1")


def start_in_background(transport):
    """Run connect() on a thread and wait until the agent process exists."""
    errors = []

    def connect():
        try:
            transport.connect(CANDIDATE, "node-1")
        except TransportError as e:
            errors.append(e)

    thread = threading.Thread(target=connect, daemon=True)
    thread.start()

    deadline = time.monotonic() + 10
    while transport.process is None and time.monotonic() < deadline:
        time.sleep(0.01)
    assert transport.process is not None
    return thread, errors


class TestClose:
    """Tests for tearing down a running channel."""

    def test_terminates_running_process(self, tmp_path):
        transport = make_transport(tmp_path, [sys.executable, "-c", "import time; time.sleep(300)"])
        thread, errors = start_in_background(transport)
        process = transport.process

        transport.close()
        thread.join(timeout=10)

        assert process.poll() is not None
        assert not thread.is_alive()
        # The interrupted channel counts as a broken connection
        assert len(errors) == 1
        assert transport.process is None

    def test_kills_process_ignoring_sigterm(self, tmp_path):
        ready = tmp_path / "ready"
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            f"open({str(ready)!r}, 'w').close()\n"
            "time.sleep(300)\n"
        )
        config = AgentConfig(
            fsroot=str(tmp_path),
            transport={'command': [sys.executable, "-c", script], 'close_timeout': 0.5}
        )
        transport = CommandTransport(config)
        thread, _ = start_in_background(transport)
        process = transport.process

        deadline = time.monotonic() + 10
        while not ready.exists() and time.monotonic() < deadline:
            time.sleep(0.01)

        transport.close()
        thread.join(timeout=10)

        assert process.returncode == -9

    def test_idle_close_is_noop(self, tmp_path):
        transport = make_transport(tmp_path, [sys.executable, "-c", "pass"])
        transport.close()
        transport.connect(CANDIDATE, "node-1")
        transport.close()
        assert transport.process is None
