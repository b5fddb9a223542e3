"""
Connection supervisor.

Top-level loop of the agent:

    DISCOVERING -> VERIFYING -> REGISTERING -> CONNECTED -> BACKOFF -> DISCOVERING

VERIFYING is skipped when credentials are configured. Retryable failures in
any state go to BACKOFF; the retry budget is checked there and the process
exits with status 1 once it is used up. Anything that is not retryable
propagates to the caller.
"""
import logging
import random
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import requests

from swarm_agent.discovery import DiscoveryResolver
from swarm_agent.label_watcher import LabelFileWatcher
from swarm_agent.logging_utils import correlation_context, log_with_fields, set_correlation_fields
from swarm_agent.metrics import BACKOFF_SECONDS, CONNECTED, CONNECTION_ATTEMPTS, RETRY_ATTEMPT
from swarm_agent.models import AgentConfig, Candidate
from swarm_agent.registration import RegistrationClient
from swarm_agent.retry_backoff import RetryError, compute_wait
from swarm_agent.transport import ExecutionTransport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RETRIES_EXHAUSTED = 1

# Failures that lead to BACKOFF instead of ending the process
RETRYABLE_ERRORS = (RetryError, requests.RequestException, OSError)

WatcherFactory = Callable[[Candidate, str], LabelFileWatcher]


class SupervisorState(Enum):
    DISCOVERING = "discovering"
    VERIFYING = "verifying"
    REGISTERING = "registering"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    EXIT = "exit"


@dataclass
class RetryState:
    """Attempt counter; lives as long as the process."""
    attempt: int = 0
    last_wait_seconds: int = 0


class ConnectionSupervisor:
    """
    Drives discovery, registration and the execution channel, and decides
    when to retry and when to give up.
    """

    def __init__(
        self,
        config: AgentConfig,
        resolver: DiscoveryResolver,
        registration: RegistrationClient,
        transport: ExecutionTransport,
        watcher_factory: Optional[WatcherFactory] = None,
        identity_hash: str = "",
        sleep: Callable[[float], None] = time.sleep,
        exit: Callable[[int], None] = sys.exit,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize supervisor.

        Args:
            config: Agent configuration
            resolver: Finds a coordinator candidate
            registration: Registers the node
            transport: Blocks while connected
            watcher_factory: Builds the label watcher for a (candidate, name) pair;
                None disables label watching
            identity_hash: Machine identifier sent on registration
            sleep: Sleep function used for back-off
            exit: Called with the exit status when the loop ends
            rng: Random source for jitter
        """
        self.config = config
        self.resolver = resolver
        self.registration = registration
        self.transport = transport
        self.watcher_factory = watcher_factory
        self.identity_hash = identity_hash
        self.sleep = sleep
        self.exit = exit
        self.rng = rng or random.Random()

        self.state = SupervisorState.DISCOVERING
        self.retry_state = RetryState()
        self.history: List[SupervisorState] = []
        self.node_name = config.name
        self.candidate: Optional[Candidate] = None
        self.watcher: Optional[LabelFileWatcher] = None

    def _enter(self, state: SupervisorState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"Supervisor state: {state.value}")

    def run(self) -> None:
        """
        Run until the retry budget is used up or a clean disconnect ends the
        process. Returns only if the injected exit function returns.
        """
        logger.info("Connecting to coordinator")

        while True:
            with correlation_context(node_name=self.node_name, attempt=self.retry_state.attempt):
                try:
                    self.connect_once()
                except RETRYABLE_ERRORS as e:
                    CONNECTION_ATTEMPTS.labels(outcome="failed").inc()
                    logger.error(f"Attempt {self.retry_state.attempt + 1} failed: {e}")
                    logger.debug("Failure details", exc_info=True)
                else:
                    CONNECTION_ATTEMPTS.labels(outcome="closed").inc()
                    if self.config.no_retry_after_connected:
                        logger.info("Connection closed, not reconnecting")
                        self.finish(EXIT_OK)
                        return
                    logger.info("Connection closed")
                finally:
                    CONNECTED.set(0)

                if not self.back_off():
                    return

    def connect_once(self) -> None:
        """
        One pass through DISCOVERING, VERIFYING, REGISTERING and CONNECTED.

        Raises:
            RetryError: Or a requests/OS error, on any retryable failure
        """
        self._enter(SupervisorState.DISCOVERING)
        candidate = self.resolver.resolve()
        self.candidate = candidate
        set_correlation_fields(coordinator=candidate.url)

        if not self.config.has_credentials:
            self._enter(SupervisorState.VERIFYING)
            self.resolver.verify_coordinator(candidate)

        self._enter(SupervisorState.REGISTERING)
        self.node_name = self.registration.create_node(candidate, self.config, self.identity_hash)
        set_correlation_fields(node_name=self.node_name)
        self.start_watcher(candidate)

        self._enter(SupervisorState.CONNECTED)
        CONNECTED.set(1)
        self.transport.connect(candidate, self.node_name)

    def start_watcher(self, candidate: Candidate) -> None:
        """Start the label watcher after the first registration, retarget it after later ones."""
        if self.watcher_factory is None:
            return

        if self.watcher is None:
            self.watcher = self.watcher_factory(candidate, self.node_name)
            self.watcher.start()
        else:
            self.watcher.retarget(candidate, self.node_name)

    def back_off(self) -> bool:
        """
        Wait before the next attempt.

        The wait is computed from the attempt count before it is incremented;
        the budget check comes before the sleep.

        Returns:
            False if the retry budget is exhausted (exit has been called)
        """
        self._enter(SupervisorState.BACKOFF)
        retry = self.config.retry

        wait = compute_wait(
            retry.backoff,
            self.retry_state.attempt,
            retry.interval,
            retry.max_interval,
            jitter=retry.jitter,
            rng=self.rng
        )
        self.retry_state.attempt += 1
        self.retry_state.last_wait_seconds = wait
        RETRY_ATTEMPT.set(self.retry_state.attempt)

        if retry.retry >= 0 and self.retry_state.attempt >= retry.retry:
            logger.error(f"Exceeded retry count of {retry.retry}")
            self.finish(EXIT_RETRIES_EXHAUSTED)
            return False

        log_with_fields(
            logger, logging.INFO, f"Retrying in {wait} seconds",
            wait_seconds=wait, policy=retry.backoff.value
        )
        BACKOFF_SECONDS.inc(wait)
        self.sleep(wait)
        return True

    def finish(self, status: int) -> None:
        """Stop the watcher and end the process with the given status."""
        self._enter(SupervisorState.EXIT)
        self.shutdown()
        self.exit(status)

    def shutdown(self) -> None:
        """Stop background work."""
        if self.watcher is not None:
            self.watcher.stop()
