import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, Optional

from ..core.config import settings
from ..core.timeutil import utcnow
from ..models.identity import VerificationChallenge, mask_phone
from .identity_exceptions import ChallengeNotFoundError, VerificationCodeMismatchError

logger = logging.getLogger(__name__)

MAX_VERIFICATION_TTL_MINUTES = 15


def generate_code(length: Optional[int] = None) -> str:
    """Uniformly random numeric code, zero-padded"""
    length = length or settings.VERIFICATION_CODE_LENGTH
    return f"{secrets.randbelow(10 ** length):0{length}d}"


class VerificationCache:
    """Short-lived store of one live verification challenge per phone.

    Writes always overwrite. Consumption happens inside a per-phone lock so
    two concurrent submissions for the same number cannot both succeed.
    """

    def __init__(self, ttl_minutes: Optional[int] = None, single_use: Optional[bool] = None):
        ttl = ttl_minutes or settings.VERIFICATION_TTL_MINUTES
        self.ttl = timedelta(minutes=min(ttl, MAX_VERIFICATION_TTL_MINUTES))
        self.single_use = settings.VERIFICATION_SINGLE_USE if single_use is None else single_use
        self._challenges: Dict[str, VerificationChallenge] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, phone: str) -> asyncio.Lock:
        lock = self._locks.get(phone)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[phone] = lock
        return lock

    @asynccontextmanager
    async def locked(self, phone: str):
        """Critical section for everything that consumes a phone's challenge"""
        async with self._lock_for(phone):
            yield

    def issue(self, phone: str, code: Optional[str] = None) -> VerificationChallenge:
        """Store a fresh challenge, replacing any live one for the phone"""
        now = utcnow()
        challenge = VerificationChallenge(
            phone=phone,
            code=code or generate_code(),
            expires_at=now + self.ttl,
            issued_at=now,
        )
        self._challenges[phone] = challenge
        logger.debug(f"Issued verification code for {mask_phone(phone)}, expires {challenge.expires_at.isoformat()}")
        return challenge

    def peek(self, phone: str) -> Optional[VerificationChallenge]:
        """Live challenge for a phone, if any"""
        challenge = self._challenges.get(phone)
        if challenge is None:
            return None
        if challenge.is_expired():
            self._challenges.pop(phone, None)
            return None
        return challenge

    def check(self, phone: str, code: str) -> VerificationChallenge:
        """Compare a submitted code; call while holding ``locked(phone)``.

        A mismatch leaves the challenge live until it expires.
        """
        challenge = self.peek(phone)
        if challenge is None:
            raise ChallengeNotFoundError("Verification code expired or not found")
        if not secrets.compare_digest(str(challenge.code), str(code).strip()):
            logger.warning(f"Verification code mismatch for {mask_phone(phone)}")
            raise VerificationCodeMismatchError("Invalid verification code")
        return challenge

    def consume(self, phone: str):
        """Retire a matched challenge under the single-use policy"""
        if self.single_use:
            self._challenges.pop(phone, None)

    def discard(self, phone: str):
        self._challenges.pop(phone, None)

    def purge_expired(self) -> int:
        """Drop expired challenges and unused phone locks"""
        now = utcnow()
        expired = [phone for phone, c in self._challenges.items() if c.is_expired(now)]
        for phone in expired:
            del self._challenges[phone]

        idle = [
            phone for phone, lock in self._locks.items()
            if not lock.locked() and phone not in self._challenges
        ]
        for phone in idle:
            del self._locks[phone]
        return len(expired)

    def __len__(self) -> int:
        return len(self._challenges)


# Singleton instance
_verification_cache = None

def get_verification_cache() -> VerificationCache:
    """Get singleton VerificationCache instance"""
    global _verification_cache
    if _verification_cache is None:
        _verification_cache = VerificationCache()
    return _verification_cache
