from urllib.parse import urlsplit, urlunsplit


def redact_url(url: str) -> str:
    """Drop the query string and credentials so traces don't carry tokens."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return "<unparseable url>"
    netloc = parts.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    query = "<redacted>" if parts.query else ""
    return urlunsplit((parts.scheme, netloc, parts.path, query, ""))
