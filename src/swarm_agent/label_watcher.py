"""
Label file watcher.

Polls the labels file and pushes changes to the coordinator. A change is
first applied in place through the label endpoints (soft update); if that
fails, the agent restarts itself so it registers again with the new labels
(hard update).
"""
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import requests

from swarm_agent.logging_utils import set_correlation_fields
from swarm_agent.metrics import LABEL_UPDATES
from swarm_agent.models import Candidate
from swarm_agent.registration import RegistrationClient
from swarm_agent.retry_backoff import RetryError
from swarm_agent.security_utils import split_labels

logger = logging.getLogger(__name__)

DEFAULT_WATCH_INTERVAL = 10.0

# Managed by the coordinator, never removed by the agent
COORDINATOR_LABEL = 'swarm'


class SoftLabelUpdateError(Exception):
    """Labels could not be updated in place."""
    pass


def read_labels_file(path) -> str:
    """Read the raw contents of a labels file."""
    return Path(path).expanduser().read_text(encoding='utf-8')


class ProcessRestarter:
    """Replaces the running process with a fresh agent process."""

    def __init__(
        self,
        exit_func: Callable[[int], None] = os._exit,
        before_restart: Optional[Callable[[], None]] = None
    ):
        """
        Args:
            exit_func: Called with status 1 if the exec fails
            before_restart: Releases what the new process must not inherit,
                such as a running execution channel
        """
        self.exit_func = exit_func
        self.before_restart = before_restart

    def restart(self, argv: Sequence[str]) -> None:
        """
        Re-exec the agent with the given command-line arguments.

        Does not return on success. If the exec fails the process exits
        with status 1.
        """
        command = [sys.executable, '-m', 'swarm_agent.main'] + list(argv)

        if self.before_restart is not None:
            try:
                self.before_restart()
            except OSError as e:
                logger.error(f"Cleanup before restart failed: {e}", exc_info=True)
                self.exit_func(1)
                return

        logger.warning(f"Invoking: {' '.join(command)}")

        for handler in logging.getLogger().handlers:
            handler.flush()

        try:
            os.execv(sys.executable, command)
        except OSError as e:
            logger.error(f"Unable to restart the agent: {e}", exc_info=True)
            self.exit_func(1)


class LabelFileWatcher:
    """
    Background loop that keeps the node's labels in line with a file.

    The watcher runs as a daemon thread and checks a stop flag once per
    poll interval.
    """

    def __init__(
        self,
        labels_file: str,
        registration: RegistrationClient,
        candidate: Candidate,
        node_name: str,
        argv: List[str],
        restarter: Optional[ProcessRestarter] = None,
        interval: float = DEFAULT_WATCH_INTERVAL
    ):
        """
        Initialize label watcher.

        Args:
            labels_file: File with space-delimited labels
            registration: Client for the label endpoints
            candidate: Coordinator the node is registered with
            node_name: Final node name returned by registration
            argv: Command-line arguments for a hard restart
            restarter: Performs the hard restart
            interval: Poll interval in seconds
        """
        self.labels_file = labels_file
        self.registration = registration
        self.argv = list(argv)
        self.restarter = restarter or ProcessRestarter()
        self.interval = interval

        self._candidate = candidate
        self._node_name = node_name
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        try:
            self.labels = read_labels_file(labels_file)
        except OSError as e:
            logger.warning(f"Unable to read {labels_file}: {e}")
            self.labels = ""

        logger.debug(f"Labels loaded: {self.labels.strip()}")

    @property
    def target(self):
        """Current (candidate, node name) pair."""
        with self._lock:
            return self._candidate, self._node_name

    def retarget(self, candidate: Candidate, node_name: str) -> None:
        """Point the watcher at a new registration after a reconnect."""
        with self._lock:
            self._candidate = candidate
            self._node_name = node_name

    def start(self) -> None:
        """Start the watcher thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name='label-watcher', daemon=True)
        self._thread.start()
        logger.info(f"Label watcher running, monitoring file: {self.labels_file}")

    def stop(self) -> None:
        """Ask the watcher to stop; takes effect within one poll interval."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Poll loop."""
        set_correlation_fields(node_name=self.target[1])

        while not self._stop_event.wait(self.interval):
            self.check_once()

        logger.info("Label watcher no longer running")

    def check_once(self) -> None:
        """Check the file once and apply a change if there is one."""
        try:
            contents = read_labels_file(self.labels_file)
        except OSError as e:
            logger.warning(
                f"Unable to read {self.labels_file}, node may not be reporting "
                f"proper labels to the coordinator: {e}"
            )
            return

        if contents.lower() == self.labels.lower():
            logger.debug(f"Nothing to do. {self.labels_file} has not changed.")
            return

        try:
            self.soft_update(contents)
            self.labels = contents
            LABEL_UPDATES.labels(kind="soft", outcome="success").inc()
            logger.info("Soft label update completed")
        except SoftLabelUpdateError as e:
            LABEL_UPDATES.labels(kind="soft", outcome="failed").inc()
            logger.warning(
                f"Soft label update failed: {e}. Forcing an agent restart; this is "
                f"disruptive to jobs running on this node."
            )
            self.hard_update()

    def soft_update(self, contents: str) -> None:
        """
        Replace the node's labels through the label endpoints.

        Raises:
            SoftLabelUpdateError: If any call fails
        """
        candidate, name = self.target
        logger.info(
            f"{self.labels_file} has changed. Attempting soft label update (no restart)"
        )

        try:
            current = self.registration.get_labels(candidate, name)
            old_labels = [label for label in current if label != COORDINATOR_LABEL]
            logger.info(f"Labels to be removed: {' '.join(old_labels)}")
            self.registration.remove_labels(candidate, name, old_labels)

            new_labels = split_labels(contents)
            logger.info(f"Labels to be added: {' '.join(new_labels)}")
            self.registration.add_labels(candidate, name, new_labels)
        except (RetryError, requests.RequestException, OSError) as e:
            raise SoftLabelUpdateError(str(e)) from e

    def hard_update(self) -> None:
        """Stop watching and restart the whole agent process."""
        logger.warning(f"{self.labels_file} has changed. Hard agent restart initiated.")
        self._stop_event.set()
        LABEL_UPDATES.labels(kind="hard", outcome="initiated").inc()
        self.restarter.restart(self.argv)
