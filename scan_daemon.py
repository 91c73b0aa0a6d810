from __future__ import annotations

import argparse
import importlib
import logging
from datetime import timedelta
from typing import Any

from identifier.adapters import (
    BarcodeLookupDiscoveryClient,
    CacheMySQLStore,
    CacheSQLiteStore,
    RegistryMySQLRepository,
    RegistrySQLiteRepository,
    ScanLogSQLiteRepository,
    is_mysql_dsn,
)
from identifier.adapters.discovery_http import DEFAULT_BASE_URL
from identifier.core.ports import CacheStore, ProductRegistry
from identifier.daemon import ScanHTTPServer, ScanRequestHandler, ScanService
from identifier.orchestrator import TierOrchestrator
from identifier.progress import InterTierDelay, LoggingProgressSink
from identifier.reporting import ErrorReporter


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the product identification HTTP daemon")
    parser.add_argument("--host", default="127.0.0.1", help="HTTP bind host")
    parser.add_argument("--port", type=int, default=8095, help="HTTP bind port")

    parser.add_argument("--registry-db", default="data/registry.sqlite3", help="Registry DB path or MySQL DSN")
    parser.add_argument("--cache-db", default="data/cache.sqlite3", help="Cache DB path or MySQL DSN")
    parser.add_argument("--scan-log-db", default="data/scan_log.sqlite3", help="Scan log SQLite path")

    parser.add_argument("--discovery-url", default=DEFAULT_BASE_URL, help="Barcode lookup API base URL")
    parser.add_argument("--discovery-token", default="", help="Barcode lookup API token; empty disables tier 3")
    parser.add_argument(
        "--tier-factory",
        default="",
        help="Optional 'module:function' returning text_extractor/classifier for tiers 2 and 4",
    )

    parser.add_argument("--tier4-delay", type=float, default=10.0, help="Seconds to wait before tier 4 after tier 2")
    parser.add_argument("--cache-ttl-days", type=float, default=90.0, help="Cache entry TTL in days")
    parser.add_argument("--match-threshold", type=float, default=0.6, help="Tier 4 reuse similarity threshold")

    parser.add_argument("--auth-token", default="", help="Optional bearer token for POST endpoints")
    parser.add_argument("--log-level", default="INFO", help="Log level")
    return parser


def build_cache(target: str, ttl: timedelta) -> CacheStore:
    if is_mysql_dsn(target):
        return CacheMySQLStore.from_dsn(target, default_ttl=ttl)
    return CacheSQLiteStore(target, default_ttl=ttl)


def build_registry(target: str) -> ProductRegistry:
    if is_mysql_dsn(target):
        return RegistryMySQLRepository.from_dsn(target)
    return RegistrySQLiteRepository(target)


def load_tier_factory(spec: str) -> dict[str, Any]:
    token = spec.strip()
    if not token:
        return {}
    module_name, _, attr = token.partition(":")
    if not module_name or not attr:
        raise ValueError("--tier-factory must look like 'package.module:function'")
    factory = getattr(importlib.import_module(module_name), attr)
    tiers = factory()
    if not isinstance(tiers, dict):
        raise ValueError("tier factory must return a dict")
    return {key: tiers[key] for key in ("text_extractor", "classifier") if tiers.get(key) is not None}


def main() -> None:
    args = _build_parser().parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ttl = timedelta(days=max(0.0, float(args.cache_ttl_days)))
    cache = build_cache(args.cache_db, ttl)
    registry = build_registry(args.registry_db)
    scan_log = ScanLogSQLiteRepository(args.scan_log_db)

    discovery = None
    if (args.discovery_token or "").strip():
        discovery = BarcodeLookupDiscoveryClient(api_token=args.discovery_token, base_url=args.discovery_url)

    orchestrator = TierOrchestrator(
        cache,
        registry,
        discovery=discovery,
        usage_logger=scan_log,
        progress=LoggingProgressSink(),
        inter_tier_delay=InterTierDelay(args.tier4_delay),
        match_threshold=args.match_threshold,
        cache_ttl=ttl,
        **load_tier_factory(args.tier_factory),
    )
    service = ScanService(
        orchestrator,
        reporter=ErrorReporter(cache, registry, scan_log),
        metrics=scan_log,
    )

    server = ScanHTTPServer(
        (args.host, int(args.port)),
        ScanRequestHandler,
        service=service,
        auth_token=(args.auth_token or "").strip() or None,
    )

    print(
        "Identifier daemon started:",
        f"listen={args.host}:{args.port}",
        f"registry_mysql={is_mysql_dsn(args.registry_db)}",
        f"cache_mysql={is_mysql_dsn(args.cache_db)}",
        f"discovery={discovery is not None}",
    )

    try:
        server.serve_forever(poll_interval=0.5)
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
