from urllib.parse import urlsplit


def normalize_domain(domain: str) -> str:
    """Canonical host for memory lookups: ``https://www.Example.com/a`` -> ``example.com``."""
    if not domain:
        return ""

    normalized = domain.strip().lower()
    if "://" in normalized:
        normalized = urlsplit(normalized).hostname or ""

    normalized = normalized.split("/", 1)[0]
    normalized = normalized.split("?", 1)[0].split("#", 1)[0]
    normalized = normalized.rsplit("@", 1)[-1].split(":", 1)[0]
    return normalized.removeprefix("www.")
