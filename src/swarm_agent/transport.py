"""
Execution transport.

The transport carries build commands between node and coordinator once the
node is registered. The agent only needs a call that blocks while connected;
the default implementation runs an external agent process.
"""
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from swarm_agent.models import AgentConfig, Candidate
from swarm_agent.retry_backoff import RetryError

logger = logging.getLogger(__name__)


class TransportError(RetryError):
    """The execution channel could not be established or broke."""
    pass


class ExecutionTransport(ABC):
    """Blocks while an execution channel to the coordinator is open."""

    @abstractmethod
    def connect(self, candidate: Candidate, node_name: str) -> None:
        """
        Open the channel and block until it is closed.

        Raises:
            TransportError: If the channel failed
        """

    def close(self) -> None:
        """Tear down an open channel from another thread; no-op when idle."""


class CommandTransport(ExecutionTransport):
    """
    Runs an external agent command and waits for it to exit.

    Placeholders {url}, {name}, {secret} and {work_dir} in the command
    template are filled in for each connection.
    """

    def __init__(self, config: AgentConfig):
        self.config = config
        self.process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def build_command(self, candidate: Candidate, node_name: str) -> List[str]:
        """Expand the command template for one connection."""
        values = {
            'url': candidate.url,
            'name': node_name,
            'secret': candidate.secret,
            'work_dir': str(self.config.fsroot_path),
        }
        try:
            return [part.format(**values) for part in self.config.transport.command]
        except (KeyError, IndexError, ValueError) as e:
            raise TransportError(f"Invalid transport command template: {e}") from e

    def connect(self, candidate: Candidate, node_name: str) -> None:
        command = self.build_command(candidate, node_name)
        if not command:
            raise TransportError("No transport command configured")

        logger.info(f"Starting execution channel: {command[0]}")
        logger.debug(f"Transport command: {' '.join(command)}")

        with self._lock:
            try:
                process = subprocess.Popen(command, cwd=str(self.config.fsroot_path))
            except OSError as e:
                raise TransportError(
                    f"Failed to establish connection to {candidate.url}: {e}"
                ) from e
            self.process = process

        try:
            returncode = process.wait()
        except BaseException:
            self.close()
            raise
        finally:
            with self._lock:
                if self.process is process:
                    self.process = None

        if returncode != 0:
            raise TransportError(
                f"Connection to {candidate.url} ended with exit code {returncode}"
            )

        logger.info(f"Connection to {candidate.url} closed")

    def close(self) -> None:
        """Terminate the agent process, killing it if it does not exit in time."""
        with self._lock:
            process = self.process

        if process is None or process.poll() is not None:
            return

        timeout = self.config.transport.close_timeout
        logger.info(f"Stopping execution channel (pid {process.pid})")
        process.terminate()
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Execution channel did not exit within {timeout}s, killing it")
            process.kill()
            process.wait()
