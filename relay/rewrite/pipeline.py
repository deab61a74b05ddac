"""
Response rewriting pipeline.

Takes a fully buffered upstream response and turns it into the bytes and
headers that go back to the client:

    decode -> challenge check -> rewrite (text only) -> re-encode -> assemble

Every path through the pipeline ends in a PipelineResult whose ``outcome``
tells how the body was treated. Unexpected errors never escape: they end in
the FALLBACK outcome, which relays the upstream bytes untouched.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional

from prometheus_client import Counter

from relay.models import UpstreamResponse
from relay.rewrite.assembler import (
    HeaderList,
    body_allowed,
    filter_headers,
    with_content_encoding,
)
from relay.rewrite.challenge import is_challenge_response
from relay.rewrite.codec import (
    ContentEncoding,
    DecodeFailure,
    DecodedPayload,
    decode_body,
    encode_body,
    parse_content_encoding,
)
from relay.rewrite.rules import RewriteRule, is_rewritable_content_type, rewrite_text

logger = logging.getLogger("uvicorn.error")

pipeline_outcomes = Counter(
    "relay_pipeline_outcomes_total",
    "Upstream responses by how the rewriting pipeline treated them",
    ["outcome"],
)

_CHARSET_RE = re.compile(r"charset\s*=\s*\"?([\w.:-]+)", re.IGNORECASE)


class PipelineOutcome(Enum):
    REWRITTEN = "rewritten"
    PASSTHROUGH = "passthrough"
    CHALLENGE = "challenge"
    DECODE_FAILED = "decode_failed"
    FALLBACK = "fallback"


@dataclass
class PipelineResult:
    outcome: PipelineOutcome
    status_code: int
    headers: HeaderList
    body: bytes
    error: Optional[BaseException] = field(default=None, repr=False)


def _charset(content_type: str) -> str:
    match = _CHARSET_RE.search(content_type)
    return match.group(1) if match else "utf-8"


def _decode_text(data: bytes, content_type: str) -> Optional[str]:
    try:
        return data.decode(_charset(content_type))
    except (UnicodeDecodeError, LookupError):
        return None


def process_upstream_response(
    upstream: UpstreamResponse,
    rules: Iterable[RewriteRule],
    rewrite_location: Optional[Callable[[str], str]] = None,
) -> PipelineResult:
    """Run the pipeline, falling back to a raw relay on unexpected errors."""
    try:
        result = _run_pipeline(upstream, list(rules), rewrite_location)
    except Exception as e:
        logger.error(
            f"Rewrite pipeline failed for {upstream.status_code} response, "
            f"relaying original bytes: {e}",
            exc_info=True,
        )
        result = PipelineResult(
            outcome=PipelineOutcome.FALLBACK,
            status_code=upstream.status_code,
            headers=filter_headers(upstream.headers),
            body=upstream.raw_body,
            error=e,
        )
    pipeline_outcomes.labels(outcome=result.outcome.value).inc()
    return result


def _run_pipeline(
    upstream: UpstreamResponse,
    rules: List[RewriteRule],
    rewrite_location: Optional[Callable[[str], str]],
) -> PipelineResult:
    content_type = upstream.header("content-type") or ""

    # Bodyless statuses and empty bodies (HEAD answers among them) are relayed
    # as-is; re-encoding nothing would fabricate a compressed stream.
    if not body_allowed(upstream.status_code):
        result = _raw(upstream, PipelineOutcome.PASSTHROUGH, rewrite_location)
        result.body = b""
        return result
    if not upstream.raw_body:
        return _raw(upstream, PipelineOutcome.PASSTHROUGH, rewrite_location)

    encoding = parse_content_encoding(upstream.header("content-encoding"))

    if encoding is None:
        logger.debug(
            f"Unsupported content-encoding {upstream.header('content-encoding')!r}, "
            "relaying as opaque bytes"
        )
        return _raw(upstream, PipelineOutcome.PASSTHROUGH, rewrite_location)

    decode_error: Optional[DecodeFailure] = None
    try:
        payload = decode_body(upstream.raw_body, encoding)
    except DecodeFailure as e:
        logger.warning(f"{e}; relaying without rewriting")
        decode_error = e
        payload = DecodedPayload(encoding=ContentEncoding.IDENTITY, data=upstream.raw_body)

    # Challenge pages are relayed as received, cookies included, so their own
    # scripts run against the real origin semantics.
    body_text = payload.data.decode("utf-8", errors="replace")
    if is_challenge_response(upstream.status_code, body_text):
        logger.info(
            f"Challenge response detected (status {upstream.status_code}), "
            "relaying without rewriting"
        )
        return PipelineResult(
            outcome=PipelineOutcome.CHALLENGE,
            status_code=upstream.status_code,
            headers=filter_headers(upstream.headers),
            body=upstream.raw_body,
        )

    if decode_error is not None:
        result = _raw(upstream, PipelineOutcome.DECODE_FAILED, rewrite_location)
        result.error = decode_error
        return result

    if not is_rewritable_content_type(content_type):
        return _raw(upstream, PipelineOutcome.PASSTHROUGH, rewrite_location)

    text = _decode_text(payload.data, content_type)
    if text is None:
        logger.debug(f"Body declared as {content_type!r} is not decodable text")
        return _raw(upstream, PipelineOutcome.PASSTHROUGH, rewrite_location)

    rewritten = rewrite_text(text, rules, content_type)
    out = encode_body(
        DecodedPayload(encoding=encoding, data=rewritten.encode(_charset(content_type)))
    )
    headers = with_content_encoding(
        filter_headers(upstream.headers, rewrite_location=rewrite_location), encoding
    )
    return PipelineResult(
        outcome=PipelineOutcome.REWRITTEN,
        status_code=upstream.status_code,
        headers=headers,
        body=out,
    )


def _raw(
    upstream: UpstreamResponse,
    outcome: PipelineOutcome,
    rewrite_location: Optional[Callable[[str], str]],
) -> PipelineResult:
    return PipelineResult(
        outcome=outcome,
        status_code=upstream.status_code,
        headers=filter_headers(upstream.headers, rewrite_location=rewrite_location),
        body=upstream.raw_body,
    )
