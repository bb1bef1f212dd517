"""
common_core.config_enums - Enums related to service configuration.
"""

from __future__ import annotations

from enum import Enum


class Environment(str, Enum):
    """Defines application environments."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class BackendMode(str, Enum):
    """Infrastructure backing the work queue, counter store and change fan-out."""

    REDIS = "redis"
    LOCAL = "local"


class EntityStoreType(str, Enum):
    """Backing store that batches are applied against."""

    POSTGRES = "postgres"
    MEMORY = "memory"
