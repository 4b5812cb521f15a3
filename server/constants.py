"""Centralized constants for the persistence layer."""

from datetime import datetime

# =============================================================================
# DATABASES
# =============================================================================

# ID the settings' DATABASE_URL is registered under
DEFAULT_DATABASE_ID = "default"

# Migration log table, one per database
MIGRATION_TABLE = "_migrations"

# =============================================================================
# PERSIST
# =============================================================================

# Name of persist table, prefixed to stay clear of application tables
PERSIST_TABLE = "_persist_"

# Sentinel expiration for keys stored without one (naive UTC)
NEVER_EXPIRES = datetime(4001, 1, 1)

# Seconds between expired-key sweeps
DEFAULT_TIDY_INTERVAL = 3600.0

# Insert/update rounds `set` attempts before giving up on a contended key
SET_MAX_ATTEMPTS = 3
