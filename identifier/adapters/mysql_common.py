from __future__ import annotations

from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

MYSQL_DUPLICATE_KEY_ERRNO = 1062


class MySQLDsnError(ValueError):
    pass


def import_pymysql() -> Any:
    try:
        import pymysql  # type: ignore
    except Exception as exc:
        raise RuntimeError(
            "pymysql is required for MySQL stores. Install with: pip install pymysql"
        ) from exc
    return pymysql


def parse_mysql_dsn(dsn: str) -> dict[str, object]:
    token = dsn.strip()
    if token.startswith("mysql+pymysql://"):
        token = "mysql://" + token[len("mysql+pymysql://") :]

    parsed = urlparse(token)
    if parsed.scheme != "mysql":
        raise MySQLDsnError(f"Unsupported DSN scheme: {parsed.scheme!r}")

    database = parsed.path.lstrip("/")
    if not database:
        raise MySQLDsnError("MySQL DSN must include database name")

    query = parse_qs(parsed.query)
    charset = query.get("charset", ["utf8mb4"])[0]

    connect_kwargs: dict[str, object] = {
        "host": parsed.hostname or "127.0.0.1",
        "port": parsed.port or 3306,
        "user": unquote(parsed.username or ""),
        "password": unquote(parsed.password or ""),
        "database": database,
        "charset": charset,
        "autocommit": False,
    }

    raw_timeout = query.get("connect_timeout", [None])[0]
    if raw_timeout is not None:
        try:
            connect_kwargs["connect_timeout"] = int(raw_timeout)
        except ValueError as exc:
            raise MySQLDsnError(f"connect_timeout must be an integer, got {raw_timeout!r}") from exc

    return connect_kwargs


def is_mysql_dsn(value: str) -> bool:
    token = value.strip().lower()
    return token.startswith("mysql://") or token.startswith("mysql+pymysql://")


def is_duplicate_key_error(error: BaseException) -> bool:
    args = getattr(error, "args", ())
    if args and isinstance(args[0], int):
        return args[0] == MYSQL_DUPLICATE_KEY_ERRNO
    return "duplicate entry" in str(error).lower()
