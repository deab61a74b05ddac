from .codec import (
    ContentEncoding,
    DecodedPayload,
    DecodeFailure,
    decode_body,
    encode_body,
    parse_content_encoding,
)
from .challenge import is_challenge_response
from .rules import RewriteRule, build_rewrite_rules, rewrite_text
from .pipeline import PipelineOutcome, PipelineResult, process_upstream_response

__all__ = [
    "ContentEncoding",
    "DecodedPayload",
    "DecodeFailure",
    "decode_body",
    "encode_body",
    "parse_content_encoding",
    "is_challenge_response",
    "RewriteRule",
    "build_rewrite_rules",
    "rewrite_text",
    "PipelineOutcome",
    "PipelineResult",
    "process_upstream_response",
]
