import logging
from enum import Enum
from typing import Optional

from .identity_exceptions import IdentityNotFoundError, StaleAuthVersionError
from .user_registry_service import UserRegistryService, get_user_registry_service

logger = logging.getLogger(__name__)


class AuthVersionStatus(str, Enum):
    VALID = "valid"
    STALE = "stale"


class AuthVersionService:
    """Per-user counter that invalidates every outstanding session when bumped"""

    def __init__(self, user_registry: Optional[UserRegistryService] = None):
        self.user_registry = user_registry if user_registry is not None else get_user_registry_service()

    async def current(self, user_guid: str) -> int:
        return await self.user_registry.get_auth_version(user_guid)

    async def bump(self, user_guid: str, reason: str = "security event") -> int:
        new_version = await self.user_registry.increment_auth_version(user_guid)
        logger.info(f"Auth version for user {user_guid} bumped to {new_version} ({reason})")
        return new_version

    async def check(self, user_guid: str, presented_version: Optional[int]) -> AuthVersionStatus:
        """Compare a presented version against the current one; never bumps"""
        current = await self.current(user_guid)
        if presented_version is None or presented_version < current:
            return AuthVersionStatus.STALE
        return AuthVersionStatus.VALID

    async def require_current(self, user_guid: str, presented_version: Optional[int]) -> int:
        """Return the current version or raise StaleAuthVersionError"""
        try:
            current = await self.current(user_guid)
        except IdentityNotFoundError:
            logger.warning(f"Auth version check for unknown user {user_guid}")
            raise
        if presented_version is None or presented_version < current:
            logger.warning(
                f"Stale auth version for user {user_guid}: presented {presented_version}, current {current}"
            )
            raise StaleAuthVersionError(current, presented_version)
        return current


# Singleton instance
_auth_version_service = None

def get_auth_version_service() -> AuthVersionService:
    """Get singleton AuthVersionService instance"""
    global _auth_version_service
    if _auth_version_service is None:
        _auth_version_service = AuthVersionService()
    return _auth_version_service
