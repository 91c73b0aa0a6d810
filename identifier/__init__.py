from __future__ import annotations

from .adapters import (
    CacheMySQLStore,
    CacheSQLiteStore,
    RegistryMySQLRepository,
    RegistrySQLiteRepository,
    ScanLogSQLiteRepository,
    is_mysql_dsn,
)
from .core.models import ScanRequest, ScanResult
from .orchestrator import TierOrchestrator
from .reporting import ErrorReporter
from .transaction import CacheKey, TransactionalUpdateCoordinator

__all__ = [
    "CacheKey",
    "CacheMySQLStore",
    "CacheSQLiteStore",
    "ErrorReporter",
    "RegistryMySQLRepository",
    "RegistrySQLiteRepository",
    "ScanLogSQLiteRepository",
    "ScanRequest",
    "ScanResult",
    "TierOrchestrator",
    "TransactionalUpdateCoordinator",
    "is_mysql_dsn",
]
