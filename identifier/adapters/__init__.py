from .cache import CacheSQLiteStore
from .cache_mysql import CacheMySQLStore
from .discovery_http import BarcodeLookupDiscoveryClient, CircuitBreaker, DiscoveryError, RateLimiter
from .mysql_common import MySQLDsnError, is_mysql_dsn, parse_mysql_dsn
from .registry import RegistrySQLiteRepository
from .registry_mysql import RegistryMySQLRepository
from .scan_log import ScanLogSQLiteRepository

__all__ = [
    "BarcodeLookupDiscoveryClient",
    "CacheMySQLStore",
    "CacheSQLiteStore",
    "CircuitBreaker",
    "DiscoveryError",
    "MySQLDsnError",
    "RateLimiter",
    "RegistryMySQLRepository",
    "RegistrySQLiteRepository",
    "ScanLogSQLiteRepository",
    "is_mysql_dsn",
    "parse_mysql_dsn",
]
