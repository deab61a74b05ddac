from typing import Optional

CHALLENGE_STATUS_CODES = {429, 503}

# Lowercased signatures of anti-automation interstitial pages
CHALLENGE_MARKERS = (
    "__cf_chl_rt_tk",
    "cf_chl_",
    "cf-browser-verification",
    "ddos protection",
    "checking your browser before accessing",
)


def is_challenge_response(status_code: Optional[int], body: Optional[str]) -> bool:
    """Return True if the response is a challenge page rather than real content."""
    if not status_code:
        return False
    if status_code in CHALLENGE_STATUS_CODES:
        return True
    if not body:
        return False
    lowered = body.lower()
    return any(marker in lowered for marker in CHALLENGE_MARKERS)
