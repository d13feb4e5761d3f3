import re
from urllib.parse import urlsplit

DEFAULT_PORTS = {"http": 80, "https": 443}
_BASE_PREFIX_RE = re.compile(r"^https?://(www\.)?", re.IGNORECASE)


def clean_url(raw_url: str) -> str:
    """Canonical form of a landing page, used as the URL mapping identity.

    Lowercases scheme and host, drops a leading ``www.``, the query string,
    the fragment, userinfo, default ports and trailing slashes. Anything that
    does not parse as ``scheme://host/...`` is returned unchanged.
    """
    candidate = raw_url.strip()
    try:
        parsed = urlsplit(candidate)
        port = parsed.port
    except ValueError:
        return raw_url

    scheme = parsed.scheme.lower()
    host = parsed.hostname
    if not scheme or not host:
        return raw_url

    while host.startswith("www."):
        host = host[4:]
    if not host:
        return raw_url
    if ":" in host:
        host = f"[{host}]"
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"

    path = parsed.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    return f"{scheme}://{host}{path}"


def base_url(cleaned_url: str) -> str:
    """Scheme and ``www.`` stripped, lowercased form used for substring matching."""
    return _BASE_PREFIX_RE.sub("", cleaned_url).lower()


def landing_page_matches(landing_page: str | None, base: str) -> bool:
    # Mirrors strpos(lower(landing_page), match_base) > 0 on the database side.
    if not landing_page or not base:
        return False
    return base.lower() in landing_page.lower()
