# User Registry Database Schema
# This file defines the schema for the shared user_registry.db database

USER_REGISTRY_SCHEMA = """
-- user_registry.db - authoritative user identities
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    guid TEXT UNIQUE NOT NULL,               -- Immutable public identifier
    handle TEXT UNIQUE NOT NULL,             -- '@name', mutable
    phone TEXT UNIQUE NOT NULL,              -- E.164 number, mutable
    auth_version INTEGER NOT NULL DEFAULT 1, -- Only ever increases
    pin_hash TEXT,                           -- bcrypt hash of the PIN
    pin_set_at DATETIME,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at DATETIME NOT NULL,
    description TEXT
);

CREATE INDEX IF NOT EXISTS idx_users_handle ON users(handle);
CREATE INDEX IF NOT EXISTS idx_users_phone ON users(phone);
CREATE INDEX IF NOT EXISTS idx_users_updated_at ON users(updated_at);
"""

USER_REGISTRY_MIGRATIONS = [
    (
        1,
        "Initial user registry schema",
        "-- Created by USER_REGISTRY_SCHEMA",
    ),
]
