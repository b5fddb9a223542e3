"""
Stable short identifier for this machine.

Used by the coordinator to tell apart nodes that share a name. Collisions
are acceptable, so a fast digest is enough.
"""
import hashlib
import logging
import socket
from pathlib import Path
from typing import List

import psutil

logger = logging.getLogger(__name__)

_ADDRESS_FAMILIES = (socket.AF_INET, socket.AF_INET6)


def _interface_addresses() -> List[str]:
    """IPv4, IPv6 and hardware addresses of all local interfaces."""
    lines = []
    for interface, addresses in sorted(psutil.net_if_addrs().items()):
        hardware = []
        for address in addresses:
            if address.family in _ADDRESS_FAMILIES:
                lines.append(address.address)
            elif address.family == psutil.AF_LINK and address.address:
                hardware.append(address.address)
        lines.extend(hardware)
    return lines


def compute_identity_hash(path) -> str:
    """
    Derive an 8-character hex identifier from a path and the host's addresses.

    Args:
        path: The node's working root

    Returns:
        First 8 hex characters of the MD5 digest

    Example:
        >>> len(compute_identity_hash("/var/lib/agent"))
        8
    """
    root = Path(path)
    try:
        canonical = str(root.resolve(strict=True))
    except (OSError, RuntimeError) as e:
        logger.debug(f"Cannot canonicalize {path} ({e}), using absolute path")
        canonical = str(root.absolute())

    buf = [canonical]
    try:
        buf.extend(_interface_addresses())
    except (OSError, RuntimeError) as e:
        logger.debug(f"Network interface enumeration failed, hashing path only: {e}")

    digest = hashlib.md5("\n".join(buf).encode('utf-8'), usedforsecurity=False)
    return digest.hexdigest()[:8]
