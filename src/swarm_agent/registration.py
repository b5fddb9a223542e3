"""
Registration client for the coordinator's swarm endpoints.

Handles:
- CSRF crumb fetching (tolerating coordinators that issue none)
- Node creation, adopting the name chosen by the coordinator
- Label add/remove, chunked to stay below request size limits
"""
import logging
import xml.etree.ElementTree as ET
from typing import Dict, Iterable, List, Optional, Tuple

import requests

from swarm_agent.models import AgentConfig, Candidate, Crumb, DEFAULT_HTTP_TIMEOUT
from swarm_agent.retry_backoff import RetryError
from swarm_agent.security_utils import child_text, parse_xml_safely, SecurityError

logger = logging.getLogger(__name__)

# Longer label strings go through the label endpoints in chunks
LABEL_SIZE_LIMIT = 1000

CRUMB_PATH = 'crumbIssuer/api/xml'
CRUMB_XPATH = 'concat(//crumbRequestField,":",//crumb)'
CREATE_NODE_PATH = 'plugin/swarm/createSlave'
GET_LABELS_PATH = 'plugin/swarm/getSlaveLabels'
ADD_LABELS_PATH = 'plugin/swarm/addSlaveLabels'
REMOVE_LABELS_PATH = 'plugin/swarm/removeSlaveLabels'


class RegistrationError(RetryError):
    """A registration or label call was rejected by the coordinator."""
    pass


def chunk_labels(labels: Iterable[str], limit: int = LABEL_SIZE_LIMIT) -> List[str]:
    """
    Pack labels into space-joined chunks no longer than the limit.

    Labels are never split; a single label longer than the limit becomes
    a chunk of its own.

    Args:
        labels: Labels (entries may contain several whitespace-separated labels)
        limit: Maximum chunk length in characters

    Returns:
        List of space-joined chunks

    Example:
        >>> chunk_labels(["aaa", "bbb", "ccc"], limit=7)
        ['aaa bbb', 'ccc']
    """
    chunks = []
    current: List[str] = []
    current_len = 0

    for entry in labels:
        for token in entry.split():
            added = len(token) if not current else len(token) + 1
            if current and current_len + added > limit:
                chunks.append(" ".join(current))
                current = []
                current_len = 0
                added = len(token)
            current.append(token)
            current_len += added

    if current:
        chunks.append(" ".join(current))

    return chunks


def parse_properties(text: str) -> Dict[str, str]:
    """
    Parse a simple Java-properties body (key=value or key: value per line).
    """
    props = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line[0] in ('#', '!'):
            continue
        for i, char in enumerate(line):
            if char in ('=', ':'):
                props[line[:i].strip()] = line[i + 1:].strip()
                break
        else:
            props[line] = ""
    return props


class RegistrationClient:
    """
    Performs the coordinator calls that register a node and manage its labels.

    All calls go through one shared session; authentication and TLS
    settings are applied to that session once at startup.
    """

    def __init__(self, session: requests.Session, timeout: float = DEFAULT_HTTP_TIMEOUT):
        """
        Initialize registration client.

        Args:
            session: Shared HTTP session
            timeout: Per-request timeout in seconds
        """
        self.session = session
        self.timeout = timeout

    def get_crumb(self, candidate: Candidate) -> Optional[Crumb]:
        """
        Fetch a fresh CSRF crumb.

        Returns:
            Crumb, or None if the coordinator did not issue one
        """
        try:
            response = self.session.get(
                candidate.url + CRUMB_PATH,
                params={'xpath': CRUMB_XPATH},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning(f"Could not obtain CSRF crumb: {e}")
            return None

        if response.status_code != 200:
            logger.warning(
                f"Could not obtain CSRF crumb. Response code: {response.status_code}"
            )
            logger.debug(f"Crumb response body: {response.text}")
            return None

        parts = response.text.strip().split(':')
        if len(parts) != 2 or not parts[0] or not parts[1]:
            logger.warning(f"Unexpected CSRF crumb response: {response.text}")
            return None

        return Crumb(header_name=parts[0], header_value=parts[1])

    def _post(
        self,
        candidate: Candidate,
        path: str,
        params: List[Tuple[str, str]],
        action: str
    ) -> requests.Response:
        """POST with a fresh crumb; raise RegistrationError on a non-200 reply."""
        headers = {'Connection': 'close'}
        crumb = self.get_crumb(candidate)
        if crumb is not None:
            headers[crumb.header_name] = crumb.header_value

        try:
            # Empty body; some servers answer 411 without one
            response = self.session.post(
                candidate.url + path,
                params=params,
                data=b'',
                headers=headers,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise RegistrationError(f"Failed to {action} on {candidate.url}: {e}") from e

        if response.status_code != 200:
            raise RegistrationError(
                f"Failed to {action}. Response code: {response.status_code}\n{response.text}"
            )

        return response

    def create_node(
        self,
        candidate: Candidate,
        config: AgentConfig,
        identity_hash: str = ""
    ) -> str:
        """
        Register this node with the coordinator.

        Labels that do not fit into the request are appended afterwards in
        chunks, using the final node name.

        Args:
            candidate: Coordinator to register with
            config: Agent configuration
            identity_hash: Machine identifier, empty when disabled

        Returns:
            The node name to use from now on (may differ from config.name)

        Raises:
            RegistrationError: If the coordinator rejected the registration
        """
        label_str = " ".join(config.labels)
        inline_labels = label_str if len(label_str) <= LABEL_SIZE_LIMIT else ""

        params = [
            ('name', config.name),
            ('executors', str(config.executors)),
            ('remoteFsRoot', str(config.fsroot_path)),
        ]
        if config.description is not None:
            params.append(('description', config.description))
        params.append(('labels', inline_labels))
        for tool, location in config.tool_locations.items():
            params.append(('toolLocation', f"{tool}:{location}"))
        for key, value in config.environment_variables.items():
            params.append(('environmentVariable', f"{key}:{value}"))
        params.extend([
            ('secret', candidate.secret),
            ('mode', config.mode.upper()),
            ('hash', identity_hash),
            ('deleteExistingClients', str(config.delete_existing_clients).lower()),
        ])

        logger.info(f"Registering node '{config.name}' with {candidate.url}")
        response = self._post(candidate, CREATE_NODE_PATH, params, "create a swarm agent")

        name = parse_properties(response.text).get('name', '').strip() or config.name
        if name != config.name:
            logger.info(f"Coordinator assigned node name '{name}'")

        if label_str and not inline_labels:
            logger.info(
                f"Label list is {len(label_str)} characters, appending it in chunks"
            )
            self.add_labels(candidate, name, config.labels)

        return name

    def get_labels(self, candidate: Candidate, name: str) -> List[str]:
        """
        Fetch the labels the coordinator currently has for a node.

        Raises:
            RegistrationError: On a bad status or malformed XML
        """
        try:
            response = self.session.get(
                candidate.url + GET_LABELS_PATH,
                params={'name': name, 'secret': candidate.secret},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise RegistrationError(f"Failed to get labels from {candidate.url}: {e}") from e

        if response.status_code != 200:
            raise RegistrationError(
                f"Failed to retrieve labels. Response code: {response.status_code}"
            )

        try:
            root = parse_xml_safely(response.content)
        except (ET.ParseError, SecurityError) as e:
            raise RegistrationError(f"Invalid XML received from {candidate.url}: {e}") from e

        if root.tag == 'labels':
            text = "".join(root.itertext())
        else:
            text = child_text(root, 'labels')
            if text is None:
                raise RegistrationError(f"No labels element in response from {candidate.url}")

        return text.split()

    def add_labels(self, candidate: Candidate, name: str, labels: Iterable[str]) -> None:
        """
        Append labels to a node, one request per chunk.

        Raises:
            RegistrationError: On the first chunk that fails
        """
        for chunk in chunk_labels(labels):
            logger.debug(f"Adding labels: {chunk}")
            self._post(
                candidate,
                ADD_LABELS_PATH,
                [('name', name), ('secret', candidate.secret), ('labels', chunk)],
                "update agent labels"
            )

    def remove_labels(self, candidate: Candidate, name: str, labels: Iterable[str]) -> None:
        """
        Remove labels from a node, one request per chunk.

        Raises:
            RegistrationError: On the first chunk that fails
        """
        for chunk in chunk_labels(labels):
            logger.debug(f"Removing labels: {chunk}")
            self._post(
                candidate,
                REMOVE_LABELS_PATH,
                [('name', name), ('secret', candidate.secret), ('labels', chunk)],
                "remove agent labels"
            )
