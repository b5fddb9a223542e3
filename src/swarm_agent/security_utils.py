"""
Security utilities for the swarm agent.

Validation of coordinator URLs, node names and label tokens before they are
placed into HTTP requests.
"""
import logging
import re
import xml.etree.ElementTree as ET
from typing import List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    """Security validation failed."""
    pass


def normalize_url(url: str) -> str:
    """
    Validate a coordinator URL and make sure it ends with a slash.

    Args:
        url: URL such as "http://server:8080/jenkins"

    Returns:
        The URL with a trailing slash

    Raises:
        SecurityError: If the URL is not an absolute http(s) URL

    Example:
        >>> normalize_url("http://server:8080/jenkins")
        'http://server:8080/jenkins/'
    """
    if not url or not url.strip():
        raise SecurityError("Empty coordinator URL")

    url = url.strip()

    if any(c in url for c in ('\0', '\n', '\r', ' ')):
        raise SecurityError(f"Invalid character in coordinator URL: {url!r}")

    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https'):
        raise SecurityError(
            f"The URL {url} is invalid: scheme must be http or https"
        )
    if not parsed.hostname:
        raise SecurityError(f"The URL {url} is invalid: missing host")

    try:
        parsed.port
    except ValueError as e:
        raise SecurityError(f"The URL {url} is invalid: {e}")

    if not url.endswith('/'):
        url += '/'

    return url


def validate_node_name(name: str) -> str:
    """
    Validate a node name.

    Node names must:
    - Be between 1 and 200 characters
    - Not contain path separators, whitespace or control characters

    Args:
        name: Node name to validate

    Returns:
        The validated name

    Raises:
        SecurityError: If the name is invalid
    """
    if not name:
        raise SecurityError("Empty node name")

    if len(name) > 200:
        raise SecurityError(f"Node name too long (max 200 chars): {name}")

    if not re.match(r'^[^/\\\s\x00-\x1f]+$', name):
        raise SecurityError(
            f"Invalid node name: {name!r}\n"
            f"Names cannot contain slashes, whitespace or control characters"
        )

    if name in ('.', '..'):
        raise SecurityError(f"Invalid node name: {name}")

    return name


def split_labels(text: str) -> List[str]:
    """
    Split a whitespace separated label string into tokens.

    Empty tokens are dropped, order is preserved.
    """
    if not text:
        return []
    return text.split()


def validate_label_tokens(labels: List[str]) -> List[str]:
    """
    Validate label tokens and flatten whitespace-separated entries.

    Each entry may itself contain several labels separated by whitespace,
    as accepted on the command line.

    Returns:
        Flat list of labels

    Raises:
        SecurityError: If a label contains control characters
    """
    result = []
    for entry in labels:
        for token in split_labels(entry):
            if re.search(r'[\x00-\x1f\x7f]', token):
                raise SecurityError(f"Invalid character in label: {token!r}")
            result.append(token)
    return result


def parse_xml_safely(data) -> ET.Element:
    """
    Parse an XML document received over the network.

    Documents carrying a DOCTYPE or entity declarations are refused so
    that entity expansion cannot be abused.

    Args:
        data: XML as bytes or str

    Returns:
        The root element

    Raises:
        SecurityError: If the document declares a DOCTYPE or entities
        ET.ParseError: If the document is malformed
    """
    text = data.decode('utf-8', errors='replace') if isinstance(data, bytes) else data
    upper = text.upper()
    if '<!DOCTYPE' in upper or '<!ENTITY' in upper:
        raise SecurityError("Refusing to parse XML with DOCTYPE or entity declarations")
    return ET.fromstring(text)


def child_text(element: ET.Element, tag: str) -> Optional[str]:
    """
    Text of the first direct child with the given tag.

    Returns:
        The concatenated text, or None if there is no such child
    """
    child = element.find(tag)
    if child is None:
        return None
    return "".join(child.itertext())
