from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def normalize_database_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://"):]

    parts = urlsplit(url)
    scheme = parts.scheme
    if scheme in {"postgres", "postgresql"}:
        scheme = "postgresql+asyncpg"
    if scheme != "postgresql+asyncpg":
        return url

    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    # asyncpg understands ``ssl=<mode>`` but rejects libpq's ``sslmode``.
    sslmode_key = next((key for key in query if key.lower() == "sslmode"), None)
    if sslmode_key is not None:
        mode = query.pop(sslmode_key).lower().strip()
        query.setdefault("ssl", "disable" if mode in {"0", "false", "no", "off", "disable"} else mode)

    new_query = urlencode(query, doseq=True)
    return urlunsplit((scheme, parts.netloc, parts.path, new_query, parts.fragment))
