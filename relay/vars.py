import os


def _parse_list(raw: str) -> list[str]:
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


SERVICE_NAME = os.getenv("SERVICE_NAME", "origin-relay")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))

ORIGIN_URL = os.environ.get("ORIGIN_URL", "https://orteil.dashnet.org").rstrip("/")
# Other hostnames of the origin that are rewritten onto the prefix
ORIGIN_ALIASES = _parse_list(os.environ.get("ORIGIN_ALIASES", "dashnet.org"))
PROXY_PREFIX = "/" + os.environ.get("PROXY_PREFIX", "/cookieclicker").strip("/")
FETCH_PATH = os.environ.get("FETCH_PATH", "/fetch")

ALLOWED_HOSTS = _parse_list(
    os.environ.get(
        "ALLOWED_HOSTS",
        "orteil.dashnet.org,dashnet.org,ajax.googleapis.com,fonts.googleapis.com,"
        "fonts.gstatic.com,cdn.jsdelivr.net,cdnjs.cloudflare.com",
    )
)

DEFAULT_USER_AGENT = os.environ.get(
    "DEFAULT_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
)
PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "30"))
MAX_BODY_BYTES = int(os.environ.get("MAX_BODY_BYTES", str(50 * 1024 * 1024)))
INJECT_SAFETY_SCRIPT = os.getenv("INJECT_SAFETY_SCRIPT", "true").lower() == "true"

FETCH_CACHE_ENABLED = os.getenv("FETCH_CACHE_ENABLED", "true").lower() == "true"
FETCH_CACHE_TTL = float(os.getenv("FETCH_CACHE_TTL", "3600"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
