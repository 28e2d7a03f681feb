import logging
import os
import uuid
from datetime import datetime
from typing import Optional, List

import aiosqlite

from ..core.config import settings
from ..core.timeutil import utcnow, to_iso
from ..db.migrations import run_migrations
from ..db.user_registry_schema import USER_REGISTRY_SCHEMA, USER_REGISTRY_MIGRATIONS
from ..models.identity import UserIdentity, mask_handle
from .identity_exceptions import IdentityConflictError, IdentityNotFoundError

logger = logging.getLogger(__name__)


def _conflict_field(error: aiosqlite.IntegrityError) -> Optional[str]:
    message = str(error)
    for column in ("handle", "phone", "guid"):
        if f"users.{column}" in message:
            return column
    return None


class UserRegistryService:
    """Service for managing the shared user registry database"""

    def __init__(self, registry_path: Optional[str] = None):
        self.registry_path = registry_path or settings.USER_REGISTRY_PATH
        self._ensure_directory()

    def _ensure_directory(self):
        """Ensure the shared directory exists"""
        directory = os.path.dirname(self.registry_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    async def initialize(self):
        """Initialize the user registry database with schema"""
        async with aiosqlite.connect(self.registry_path) as db:
            await db.executescript(USER_REGISTRY_SCHEMA)
            await run_migrations(db, USER_REGISTRY_MIGRATIONS)
            await db.commit()

    async def _fetch_user(self, column: str, value) -> Optional[UserIdentity]:
        async with aiosqlite.connect(self.registry_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(f"SELECT * FROM users WHERE {column} = ?", (value,))
            row = await cursor.fetchone()
            return UserIdentity.from_dict(dict(row)) if row else None

    async def create_user(self, handle: str, phone: str, guid: Optional[str] = None) -> UserIdentity:
        """Create a new user; a taken handle or phone raises IdentityConflictError"""
        guid = guid or str(uuid.uuid4())
        now = to_iso(utcnow())

        async with aiosqlite.connect(self.registry_path) as db:
            try:
                await db.execute("""
                    INSERT INTO users (guid, handle, phone, auth_version, created_at, updated_at)
                    VALUES (?, ?, ?, 1, ?, ?)
                """, (guid, handle, phone, now, now))
                await db.commit()
            except aiosqlite.IntegrityError as e:
                field = _conflict_field(e)
                logger.warning(f"User creation rejected, {field or 'unique field'} already taken")
                raise IdentityConflictError(f"{field or 'User'} already exists", field=field) from e

        logger.info(f"Created user {guid} ({mask_handle(handle)})")
        return await self.get_user_by_guid(guid)

    async def get_user_by_guid(self, guid: str) -> Optional[UserIdentity]:
        """Get user by guid"""
        return await self._fetch_user("guid", guid)

    async def get_user_by_handle(self, handle: str) -> Optional[UserIdentity]:
        """Get user by handle"""
        return await self._fetch_user("handle", handle)

    async def get_user_by_phone(self, phone: str) -> Optional[UserIdentity]:
        """Get user by phone number"""
        return await self._fetch_user("phone", phone)

    async def list_users(self) -> List[UserIdentity]:
        async with aiosqlite.connect(self.registry_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM users ORDER BY created_at")
            rows = await cursor.fetchall()
            return [UserIdentity.from_dict(dict(row)) for row in rows]

    async def update_handle(self, guid: str, new_handle: str) -> UserIdentity:
        """Rename a user; the new handle must be free"""
        async with aiosqlite.connect(self.registry_path) as db:
            try:
                cursor = await db.execute("""
                    UPDATE users SET handle = ?, updated_at = ? WHERE guid = ?
                """, (new_handle, to_iso(utcnow()), guid))
                await db.commit()
            except aiosqlite.IntegrityError as e:
                raise IdentityConflictError("handle already exists", field="handle") from e
            if cursor.rowcount == 0:
                raise IdentityNotFoundError(f"Unknown user {guid}")
        return await self.get_user_by_guid(guid)

    async def update_pin_hash(self, guid: str, pin_hash: Optional[str],
                              pin_set_at: Optional[datetime] = None) -> UserIdentity:
        """Store a new PIN hash, or clear it with None"""
        now = utcnow()
        async with aiosqlite.connect(self.registry_path) as db:
            cursor = await db.execute("""
                UPDATE users SET pin_hash = ?, pin_set_at = ?, updated_at = ? WHERE guid = ?
            """, (pin_hash, to_iso(pin_set_at or now) if pin_hash else None, to_iso(now), guid))
            await db.commit()
            if cursor.rowcount == 0:
                raise IdentityNotFoundError(f"Unknown user {guid}")
        return await self.get_user_by_guid(guid)

    async def increment_auth_version(self, guid: str) -> int:
        """Increment auth_version in a single statement and return the new value"""
        async with aiosqlite.connect(self.registry_path) as db:
            cursor = await db.execute("""
                UPDATE users SET auth_version = auth_version + 1, updated_at = ?
                WHERE guid = ?
            """, (to_iso(utcnow()), guid))
            if cursor.rowcount == 0:
                await db.rollback()
                raise IdentityNotFoundError(f"Unknown user {guid}")
            cursor = await db.execute(
                "SELECT auth_version FROM users WHERE guid = ?", (guid,)
            )
            result = await cursor.fetchone()
            await db.commit()
            return result[0]

    async def get_auth_version(self, guid: str) -> int:
        async with aiosqlite.connect(self.registry_path) as db:
            cursor = await db.execute(
                "SELECT auth_version FROM users WHERE guid = ?", (guid,)
            )
            result = await cursor.fetchone()
        if result is None:
            raise IdentityNotFoundError(f"Unknown user {guid}")
        return result[0]

    async def delete_user(self, guid: str) -> bool:
        async with aiosqlite.connect(self.registry_path) as db:
            cursor = await db.execute("DELETE FROM users WHERE guid = ?", (guid,))
            await db.commit()
            return cursor.rowcount > 0

    async def get_user_changed_since(self, guid: str, since: datetime) -> Optional[UserIdentity]:
        """The user row if it changed after ``since``"""
        user = await self.get_user_by_guid(guid)
        if user is None or user.updated_at is None or user.updated_at <= since:
            return None
        return user


# Singleton instance
_user_registry_service = None

def get_user_registry_service() -> UserRegistryService:
    """Get singleton UserRegistryService instance"""
    global _user_registry_service
    if _user_registry_service is None:
        _user_registry_service = UserRegistryService()
    return _user_registry_service
