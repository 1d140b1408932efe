"""
Identity resolution for voting participants.

Combines three weak signals, in priority order:
1. the device fingerprint reported by the fingerprint provider (canonical identity)
2. a hash of browser characteristics (diagnostic only)
3. a session-scoped random token (diagnostic only)

Only the device fingerprint takes part in duplicate detection.
"""

import asyncio
import hashlib
import json
import logging
import random
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..shared.errors import IdentityUnavailable

logger = logging.getLogger(__name__)


class FingerprintError(Exception):
    """The fingerprinting mechanism could not produce an identifier."""


class FingerprintProvider(ABC):
    """Source of a best-effort stable device identifier."""

    @abstractmethod
    async def get_fingerprint(self) -> str:
        """Return the device fingerprint or raise FingerprintError."""


class ReportedFingerprintProvider(FingerprintProvider):
    """Fingerprint computed on the participant's device and sent with the request."""

    def __init__(self, visitor_id: Optional[str]):
        self.visitor_id = visitor_id

    async def get_fingerprint(self) -> str:
        if not self.visitor_id or not self.visitor_id.strip():
            raise FingerprintError("no device fingerprint was reported")
        return self.visitor_id.strip()


@dataclass(frozen=True)
class Identity:
    """
    Resolved participant identity.

    Attributes:
        device_id: Primary fingerprint, the identity used for duplicate detection
        browser_fingerprint: Hash of browser characteristics
        session_id: Session-scoped token
        user_agent: Reported user agent
    """
    device_id: str
    browser_fingerprint: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None

    def __str__(self) -> str:
        return self.device_id


def generate_browser_fingerprint(characteristics: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Generate SHA-256 hash of browser characteristics.

    Args:
        characteristics: User agent, language, platform, screen, timezone...

    Returns:
        str: Hexadecimal SHA-256 hash, or None when nothing was reported
    """
    if not characteristics:
        return None
    combined = json.dumps(characteristics, sort_keys=True, default=str)
    return hashlib.sha256(combined.encode('utf-8')).hexdigest()


def generate_session_id() -> str:
    """Create a session token: session_<epoch ms>_<9 random chars>."""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class IdentityResolver:
    """Resolves and caches one participant's identity for the session lifetime."""

    def __init__(
        self,
        provider: FingerprintProvider,
        characteristics: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        user_agent: Optional[str] = None
    ):
        self.provider = provider
        self.characteristics = characteristics or {}
        self.session_id = session_id or generate_session_id()
        self.user_agent = user_agent or self.characteristics.get('userAgent')
        self._identity: Optional[Identity] = None
        self._lock = asyncio.Lock()

    @property
    def identity(self) -> Optional[Identity]:
        """The cached identity, or None before the first successful resolution."""
        return self._identity

    async def resolve_identity(self) -> Identity:
        """
        Resolve the participant identity once and reuse it afterwards.

        Returns:
            Identity: the cached identity

        Raises:
            IdentityUnavailable: the fingerprint provider failed
        """
        if self._identity is not None:
            return self._identity

        async with self._lock:
            if self._identity is not None:
                return self._identity

            try:
                device_id = await self.provider.get_fingerprint()
            except FingerprintError as e:
                logger.error(f"Device fingerprinting failed (session={self.session_id}): {e}")
                raise IdentityUnavailable(session_id=self.session_id) from e
            except Exception as e:
                logger.exception(f"Fingerprint provider crashed (session={self.session_id}): {e!r}")
                raise IdentityUnavailable(session_id=self.session_id) from e

            if not device_id:
                logger.error(f"Device fingerprinting returned nothing (session={self.session_id})")
                raise IdentityUnavailable(session_id=self.session_id)

            self._identity = Identity(
                device_id=device_id,
                browser_fingerprint=generate_browser_fingerprint(self.characteristics),
                session_id=self.session_id,
                user_agent=self.user_agent,
            )
            logger.info(f"Device identity resolved: {device_id}")
            return self._identity
