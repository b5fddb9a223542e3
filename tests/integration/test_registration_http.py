"""Integration tests for registration against a local coordinator stub."""
import socket
import sys
import time
from pathlib import Path

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from swarm_agent.discovery import DiscoveryError, DiscoveryResolver
from swarm_agent.label_watcher import LabelFileWatcher
from swarm_agent.models import AgentConfig
from swarm_agent.registration import RegistrationClient, RegistrationError
from swarm_agent.supervisor import ConnectionSupervisor
from swarm_agent.transport import CommandTransport


class RecordingRestarter:
    def __init__(self):
        self.calls = []

    def restart(self, argv):
        self.calls.append(argv)


@pytest.fixture
def session():
    with requests.Session() as s:
        yield s


class TestDirectDiscovery:
    """Tests for slaveInfo and the pre-flight check."""

    def test_discover_and_verify(self, coordinator_server, session):
        config = AgentConfig(url=coordinator_server['url'])
        resolver = DiscoveryResolver(config, session)

        candidate = resolver.resolve()
        resolver.verify_coordinator(candidate)

        assert candidate.url == coordinator_server['url']
        assert candidate.secret == coordinator_server['state'].secret

    def test_not_a_coordinator(self, coordinator_server, session):
        coordinator_server['state'].coordinator_header = False
        resolver = DiscoveryResolver(AgentConfig(url=coordinator_server['url']), session)

        with pytest.raises(DiscoveryError, match="doesn't look like a coordinator"):
            resolver.verify_coordinator(resolver.resolve())

    def test_nothing_listening(self, session):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        url = f"http://127.0.0.1:{port}/"
        resolver = DiscoveryResolver(AgentConfig(url=url), session)
        with pytest.raises(DiscoveryError):
            resolver.resolve()


class TestRegistration:
    """Tests for node creation and label calls."""

    def test_create_node_with_crumb(self, coordinator_server, session):
        state = coordinator_server['state']
        config = AgentConfig(url=coordinator_server['url'], name="node-1",
                             labels=["linux", "docker"])
        resolver = DiscoveryResolver(config, session)
        client = RegistrationClient(session)

        name = client.create_node(resolver.resolve(), config, "abcd1234")

        assert name == "node-1"
        assert state.nodes["node-1"] == {"swarm", "linux", "docker"}
        params, headers = state.calls('POST', '/plugin/swarm/createSlave')[0]
        assert params['hash'] == ["abcd1234"]
        assert headers.get('Jenkins-Crumb') == "abc123"

    def test_create_node_without_crumb_issuer(self, coordinator_server, session):
        """Older coordinators issue no crumb; registration still works."""
        state = coordinator_server['state']
        state.crumb = None
        config = AgentConfig(url=coordinator_server['url'], name="node-1")

        name = RegistrationClient(session).create_node(
            DiscoveryResolver(config, session).resolve(), config
        )

        assert name == "node-1"

    def test_renamed_node(self, coordinator_server, session):
        state = coordinator_server['state']
        state.assigned_name = "node-1-7f3a"
        config = AgentConfig(url=coordinator_server['url'], name="node-1",
                             labels=[f"label-{i:04d}" for i in range(150)])

        name = RegistrationClient(session).create_node(
            DiscoveryResolver(config, session).resolve(), config
        )

        assert name == "node-1-7f3a"
        # Labels over the limit arrive through addSlaveLabels under the new name
        assert len(state.calls('POST', '/plugin/swarm/addSlaveLabels')) == 2
        assert len(state.nodes["node-1-7f3a"]) == 151

    def test_rejected_registration(self, coordinator_server, session):
        state = coordinator_server['state']
        state.failures['/plugin/swarm/createSlave'] = 500
        config = AgentConfig(url=coordinator_server['url'], name="node-1")

        with pytest.raises(RegistrationError, match="stub failure"):
            RegistrationClient(session).create_node(
                DiscoveryResolver(config, session).resolve(), config
            )

    def test_label_round_trip(self, coordinator_server, session):
        config = AgentConfig(url=coordinator_server['url'], name="node-1", labels=["linux"])
        candidate = DiscoveryResolver(config, session).resolve()
        client = RegistrationClient(session)
        client.create_node(candidate, config)

        client.add_labels(candidate, "node-1", ["gpu", "cuda12"])
        client.remove_labels(candidate, "node-1", ["linux"])

        assert sorted(client.get_labels(candidate, "node-1")) == ["cuda12", "gpu", "swarm"]


class TestLabelWatcher:
    """Tests for label reconciliation against the stub."""

    def test_soft_update(self, coordinator_server, session, tmp_path):
        state = coordinator_server['state']
        labels_file = tmp_path / "labels"
        labels_file.write_text("linux docker")
        config = AgentConfig(url=coordinator_server['url'], name="node-1",
                             labels=["linux", "docker"])
        candidate = DiscoveryResolver(config, session).resolve()
        client = RegistrationClient(session)
        client.create_node(candidate, config)

        restarter = RecordingRestarter()
        watcher = LabelFileWatcher(str(labels_file), client, candidate, "node-1", [],
                                   restarter=restarter, interval=0.05)
        labels_file.write_text("linux gpu")
        watcher.check_once()

        assert state.nodes["node-1"] == {"swarm", "linux", "gpu"}
        assert restarter.calls == []


class TestSupervisorEndToEnd:
    """Tests for the whole loop against the stub."""

    def test_register_connect_and_exit(self, coordinator_server, session, tmp_path):
        """With no_retry_after_connected a finished transport ends the process with 0."""
        state = coordinator_server['state']
        marker = tmp_path / "connected"
        config = AgentConfig(
            url=coordinator_server['url'],
            name="node-1",
            fsroot=str(tmp_path),
            no_retry_after_connected=True,
            transport={'command': [
                sys.executable, "-c", f"open({str(marker)!r}, 'w').write('{{name}} {{secret}}')"
            ]},
        )
        codes = []
        supervisor = ConnectionSupervisor(
            config,
            DiscoveryResolver(config, session),
            RegistrationClient(session),
            CommandTransport(config),
            sleep=lambda s: None,
            exit=codes.append
        )

        supervisor.run()

        assert codes == [0]
        assert "node-1" in state.nodes
        assert marker.read_text() == f"node-1 {state.secret}"

    def test_gives_up_after_budget(self, coordinator_server, session, tmp_path):
        state = coordinator_server['state']
        state.failures['/plugin/swarm/createSlave'] = 503
        config = AgentConfig(url=coordinator_server['url'], name="node-1", fsroot=str(tmp_path),
                             retry={'retry': 3, 'interval': 10})
        slept, codes = [], []

        start = time.monotonic()
        ConnectionSupervisor(
            config,
            DiscoveryResolver(config, session),
            RegistrationClient(session),
            CommandTransport(config),
            sleep=slept.append,
            exit=codes.append
        ).run()

        assert codes == [1]
        assert slept == [10, 10]
        assert len(state.calls('POST', '/plugin/swarm/createSlave')) == 3
        assert time.monotonic() - start < 10
