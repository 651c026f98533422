from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", "disable"}


def normalize_database_url(url: str) -> str:
    """Coerce Postgres URLs onto the asyncpg driver and its ``ssl`` query argument.

    Hosted providers hand out ``postgres://`` URLs with ``?ssl=true`` or
    ``?sslmode=require``; asyncpg only understands ``ssl=<mode>``. Non-Postgres
    URLs (the SQLite test database) are returned untouched.
    """
    url = (url or "").strip()
    if not url:
        return url

    parts = urlsplit(url)
    scheme = parts.scheme
    if scheme not in {"postgres", "postgresql", "postgresql+asyncpg", "postgresql+psycopg"}:
        return url
    scheme = "postgresql+asyncpg"

    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    sslmode = query.pop("sslmode", None)
    ssl_key = next((key for key in query if key.lower() == "ssl"), None)
    ssl_val = query.pop(ssl_key, None) if ssl_key else None
    raw = (sslmode or ssl_val or "").lower().strip()
    if raw:
        if raw in _FALSY:
            query["ssl"] = "disable"
        elif raw in _TRUTHY:
            query["ssl"] = "require"
        else:
            query["ssl"] = raw

    new_query = urlencode(query, doseq=True)
    return urlunsplit((scheme, parts.netloc, parts.path, new_query, parts.fragment))
