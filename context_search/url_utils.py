from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from url_normalize import url_normalize

from context_search.constants import REDDIT_BASE

_REDDIT_HOSTS = (
    "https://www.reddit.com",
    "https://reddit.com",
    "https://old.reddit.com",
    "http://www.reddit.com",
)


def normalize_url(url: str) -> str:
    """Canonical form of an outbound post link. Query strings are kept."""
    if not url:
        return ""
    try:
        normalized = url_normalize(url)
    except Exception:
        normalized = url

    parts = urlsplit(normalized)
    if not parts.scheme or not parts.netloc:
        return normalized
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


def permalink_path(permalink: str) -> str:
    """Reduce a full Reddit URL or permalink to a path without trailing slash."""
    path = permalink.strip()
    for host in _REDDIT_HOSTS:
        if path.startswith(host):
            path = path[len(host):]
            break
    path = path.split("?")[0].rstrip("/")
    if path and not path.startswith("/"):
        path = "/" + path
    return path


def permalink_url(permalink: str) -> str:
    return f"{REDDIT_BASE}{permalink_path(permalink)}"
