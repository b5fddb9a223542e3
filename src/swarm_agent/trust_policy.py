"""
TLS trust configuration for coordinator connections.

Either the system trust store is used, verification is disabled, or the
coordinator certificate must match one of a set of pinned SHA-256
fingerprints.
"""
import hashlib
import logging
import re
import ssl
from dataclasses import dataclass, field
from typing import FrozenSet

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPSConnection
from urllib3.connectionpool import HTTPSConnectionPool

logger = logging.getLogger(__name__)

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


def normalize_fingerprint(fingerprint: str) -> str:
    """Lower-case a hex fingerprint and strip the colons."""
    return fingerprint.strip().lower().replace(':', '')


@dataclass(frozen=True)
class TrustConfig:
    """Pinned certificate fingerprints; empty means system trust store."""
    fingerprints: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_string(cls, value: str) -> "TrustConfig":
        """
        Build from a whitespace-separated list of fingerprints.

        Raises:
            ValueError: If an entry is not a SHA-256 hex digest

        Example:
            >>> len(TrustConfig.from_string("AB:" * 31 + "CD").fingerprints)
            1
        """
        fingerprints = frozenset(
            normalize_fingerprint(fp) for fp in (value or "").split() if fp.strip(':')
        )
        for fp in fingerprints:
            if not _SHA256_HEX.match(fp):
                raise ValueError(f"Not a SHA-256 fingerprint: {fp}")
            logger.debug(f"Add allowed fingerprint: {fp}")
        return cls(fingerprints=fingerprints)

    @property
    def is_pinned(self) -> bool:
        return bool(self.fingerprints)

    def matches(self, der_certificate: bytes) -> bool:
        """Check a DER-encoded certificate against the allow-list."""
        fingerprint = hashlib.sha256(der_certificate).hexdigest()
        logger.debug(f"Check fingerprint: {fingerprint}")
        return fingerprint in self.fingerprints


class FingerprintHTTPSConnection(HTTPSConnection):
    """HTTPS connection that accepts a peer only by pinned fingerprint."""
    trust: TrustConfig = TrustConfig()

    def connect(self):
        super().connect()
        der = self.sock.getpeercert(binary_form=True)
        if not der or not self.trust.matches(der):
            self.close()
            raise ssl.SSLError("Fingerprint mismatch")
        self.is_verified = True


class FingerprintAdapter(HTTPAdapter):
    """
    Transport adapter that replaces CA validation with fingerprint pinning.

    The standard chain and hostname checks are turned off for connections
    made through this adapter; the leaf certificate fingerprint is checked
    instead.
    """

    def __init__(self, trust: TrustConfig, **kwargs):
        self.trust = trust
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs['cert_reqs'] = ssl.CERT_NONE
        pool_kwargs['assert_hostname'] = False
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)

        connection_cls = type(
            'PinnedHTTPSConnection', (FingerprintHTTPSConnection,), {'trust': self.trust}
        )
        pool_cls = type(
            'PinnedHTTPSConnectionPool', (HTTPSConnectionPool,), {'ConnectionCls': connection_cls}
        )
        pool_classes = dict(self.poolmanager.pool_classes_by_scheme)
        pool_classes['https'] = pool_cls
        self.poolmanager.pool_classes_by_scheme = pool_classes

    def send(self, request, **kwargs):
        # CA validation is replaced by the fingerprint check in connect()
        kwargs['verify'] = False
        return super().send(request, **kwargs)


def configure_session(
    session: requests.Session,
    trust: TrustConfig,
    disable_verification: bool = False
) -> requests.Session:
    """
    Apply the trust policy to a session.

    Args:
        session: Session shared by every coordinator request
        trust: Pinned fingerprints (may be empty)
        disable_verification: Accept any certificate

    Returns:
        The same session, configured
    """
    if disable_verification:
        logger.warning("SSL verification is DISABLED - any certificate will be accepted")
        session.verify = False
    elif trust.is_pinned:
        logger.info(f"Pinning coordinator certificate to {len(trust.fingerprints)} fingerprint(s)")
        session.mount('https://', FingerprintAdapter(trust))
    else:
        logger.debug("Using system trust store")

    return session
