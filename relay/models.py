from dataclasses import dataclass, field
from typing import List, Optional, Tuple


@dataclass
class UpstreamResponse:
    """A fully buffered response, body still in its original content-encoding."""

    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    raw_body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        """First value of ``name`` (case-insensitive), or None."""
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None


@dataclass(frozen=True)
class CacheEntry:
    """A fetch-gateway response kept for reuse. Never mutated once stored."""

    status_code: int
    headers: Tuple[Tuple[str, str], ...]
    body: bytes
    inserted_at: float
