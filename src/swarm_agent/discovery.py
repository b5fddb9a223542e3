"""
Coordinator discovery.

Two ways to find a coordinator:
- Broadcast: send a UDP datagram and collect the XML replies of every
  coordinator on the network, then pick one at random
- Direct: ask a configured coordinator URL for its status info

Also provides the pre-flight check that a URL really points at a
coordinator.
"""
import logging
import random
import socket
import time
import xml.etree.ElementTree as ET
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import requests

from swarm_agent.models import AgentConfig, Candidate, DEFAULT_HTTP_TIMEOUT
from swarm_agent.retry_backoff import RetryError
from swarm_agent.security_utils import (
    child_text,
    normalize_url,
    parse_xml_safely,
    SecurityError
)

logger = logging.getLogger(__name__)

BROADCAST_PAYLOAD = b'\x01' * 128
DEFAULT_BROADCAST_ADDRESS = '255.255.255.255'
RECEIVE_BUFFER_SIZE = 2048

STATUS_INFO_PATH = 'plugin/swarm/slaveInfo'

# A coordinator answers its root URL with one of these headers
COORDINATOR_HEADERS = ('X-Jenkins', 'X-Hudson')


class DiscoveryError(RetryError):
    """No usable coordinator was found."""
    pass


def parse_broadcast_response(
    data: bytes,
    sender: str,
    pinned_url: Optional[str] = None
) -> Optional[Candidate]:
    """
    Turn one broadcast reply into a candidate.

    Args:
        data: Raw datagram payload
        sender: Address of the responder (for log messages)
        pinned_url: Coordinator URL fixed by configuration, used instead
            of the URL in the reply

    Returns:
        Candidate, or None if the reply has to be discarded
    """
    try:
        root = parse_xml_safely(data)
    except (ET.ParseError, SecurityError) as e:
        logger.warning(f"Invalid response XML from {sender}: {e}")
        return None

    secret = child_text(root, 'swarm')
    if secret is None:
        logger.info(f"{sender} doesn't support swarm")
        return None

    url = pinned_url or child_text(root, 'url')
    if url is None or not url.strip():
        logger.warning(
            f"{sender} doesn't have the URL configuration set yet. "
            f"Its system configuration needs to be saved once."
        )
        return None

    try:
        url = normalize_url(url)
    except SecurityError as e:
        logger.warning(f"{sender} replied with an unusable URL: {e}")
        return None

    return Candidate(url=url, secret=secret.strip())


class DiscoveryResolver:
    """
    Finds coordinator candidates by broadcast or by direct probing.
    """

    def __init__(
        self,
        config: AgentConfig,
        session: requests.Session,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize resolver.

        Args:
            config: Agent configuration
            session: Shared HTTP session
            rng: Random source for candidate selection
        """
        self.config = config
        self.session = session
        self.rng = rng or random.Random()

    @property
    def mode(self) -> str:
        """Effective discovery mode: broadcast or direct."""
        mode = self.config.discovery.mode
        if mode == 'auto':
            return 'direct' if self.config.url else 'broadcast'
        return mode

    def resolve(self) -> Candidate:
        """
        Discover a coordinator using the configured mode.

        Raises:
            DiscoveryError: If no coordinator could be found
        """
        if self.mode == 'direct':
            return self.discover_direct()
        return self.discover_broadcast()

    def broadcast_target(self) -> Tuple[str, int]:
        """Address and port the discovery datagram is sent to."""
        address = self.config.discovery.broadcast_address
        if not address and self.config.url:
            address = urlparse(self.config.url).hostname
        return address or DEFAULT_BROADCAST_ADDRESS, self.config.discovery.port

    def collect_responses(self) -> List[Tuple[bytes, str]]:
        """
        Broadcast a discovery datagram and gather replies.

        Every reply that arrives within the discovery window is returned,
        so that each coordinator gets a fair chance.

        Returns:
            List of (payload, sender address)

        Raises:
            DiscoveryError: If nobody replied
        """
        address, port = self.broadcast_target()
        window = self.config.discovery.window
        responses = []

        logger.info(f"Broadcasting discovery request to {address}:{port}")

        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.sendto(BROADCAST_PAYLOAD, (address, port))

            deadline = time.monotonic() + window
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                sock.settimeout(max(0.001, remaining))
                try:
                    data, sender = sock.recvfrom(RECEIVE_BUFFER_SIZE)
                except socket.timeout:
                    break
                logger.debug(f"Discovery reply from {sender[0]} ({len(data)} bytes)")
                responses.append((data, sender[0]))

        if not responses:
            if self.config.url:
                raise DiscoveryError(f"Failed to receive a reply from {self.config.url}")
            raise DiscoveryError("Failed to receive a reply to broadcast.")

        return responses

    def discover_broadcast(self) -> Candidate:
        """
        Find a coordinator by UDP broadcast.

        Raises:
            DiscoveryError: If no eligible coordinator replied
        """
        pinned_url = self.config.url
        candidates = []
        for data, sender in self.collect_responses():
            candidate = parse_broadcast_response(data, sender, pinned_url=pinned_url)
            if candidate is not None:
                candidates.append(candidate)

        if not candidates:
            raise DiscoveryError("No nearby coordinator supports swarming")

        logger.info(f"Found {len(candidates)} eligible coordinator(s)")
        return self.choose(candidates)

    def choose(self, candidates: List[Candidate]) -> Candidate:
        """Pick one candidate uniformly at random."""
        return candidates[self.rng.randrange(len(candidates))]

    def discover_direct(self) -> Candidate:
        """
        Ask the configured coordinator for its swarm secret.

        Raises:
            DiscoveryError: On connection failure, bad status or bad XML
        """
        url = normalize_url(self.config.url)
        status_url = url + STATUS_INFO_PATH

        logger.info(f"Connecting to {url}")
        try:
            response = self.session.get(status_url, timeout=DEFAULT_HTTP_TIMEOUT)
        except requests.RequestException as e:
            raise DiscoveryError(f"Failed to connect to {status_url}: {e}") from e

        if response.status_code != 200:
            raise DiscoveryError(
                f"Failed to get status info from {status_url}. "
                f"Response code: {response.status_code}\n{response.text}"
            )

        try:
            root = parse_xml_safely(response.content)
        except (ET.ParseError, SecurityError) as e:
            raise DiscoveryError(f"Invalid XML received from {url}: {e}") from e

        secret = child_text(root, 'swarmSecret')
        if secret is None:
            raise DiscoveryError(f"No swarm secret in status info from {url}")

        return Candidate(url=url, secret=secret.strip())

    def verify_coordinator(self, candidate: Candidate) -> None:
        """
        Check that the candidate URL looks like a coordinator.

        Only meaningful without credentials: with credentials configured a
        403 is expected before authentication.

        Raises:
            DiscoveryError: If the URL needs authentication or is not a coordinator
        """
        logger.info(f"Verifying coordinator at {candidate.url}")
        try:
            response = self.session.get(candidate.url, timeout=DEFAULT_HTTP_TIMEOUT)
        except requests.RequestException as e:
            raise DiscoveryError(f"Failed to connect to {candidate.url}: {e}") from e

        if response.status_code == 403:
            raise DiscoveryError(
                f"{candidate.url} requires authentication; configure a username and password"
            )

        if not any(header in response.headers for header in COORDINATOR_HEADERS):
            raise DiscoveryError(f"{candidate.url} doesn't look like a coordinator")
