from .device_schema import create_tables
from .migrations import run_migrations, get_current_version, DEVICE_MIGRATIONS
from .user_registry_schema import USER_REGISTRY_SCHEMA, USER_REGISTRY_MIGRATIONS

__all__ = [
    "create_tables",
    "run_migrations",
    "get_current_version",
    "DEVICE_MIGRATIONS",
    "USER_REGISTRY_SCHEMA",
    "USER_REGISTRY_MIGRATIONS"
]
