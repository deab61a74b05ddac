"""
Ordered text rewrite rules that keep the browser on the relay.

Static markup, scripts and stylesheets fetched from the origin are full of
absolute origin URLs and CDN references. Each rule below rewrites one kind of
reference; the rules run in a fixed order and every one of them leaves text
that it (and every earlier rule) no longer matches, so running the whole
chain twice is a no-op.
"""

import json
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Union
from urllib.parse import quote

# Characters encodeURIComponent leaves alone besides alphanumerics and "-_."
_URI_COMPONENT_SAFE = "!~*'()"
# Characters that end a bare URL inside markup, CSS or JS
_URL_TAIL = r"[^\s\"'<>()\\`]*"

SHIM_MARKER = "data-relay-shim"

REWRITABLE_CONTENT_TYPES = (
    "text/html",
    "javascript",
    "ecmascript",
    "css",
    "application/json",
    "+json",
    "text/plain",
)

_SHIM_TEMPLATE = """<script data-relay-shim="1">
(function () {
  var PREFIX = __PREFIX__;
  var ORIGIN = new RegExp(__ORIGIN_PATTERN__, "i");
  function toProxy(url) {
    if (typeof url !== "string") { return url; }
    var match = ORIGIN.exec(url);
    if (!match) { return url; }
    var rest = url.slice(match[0].length);
    if (rest.indexOf(PREFIX) === 0 && /^(?:[\\/?#]|$)/.test(rest.slice(PREFIX.length))) { return rest; }
    return PREFIX + rest;
  }
  function wrap(owner, name) {
    var original = owner && owner[name];
    if (typeof original !== "function") { return; }
    try {
      Object.defineProperty(owner, name, {
        configurable: true,
        value: function (url) {
          var args = Array.prototype.slice.call(arguments);
          args[0] = toProxy(url);
          return original.apply(this, args);
        }
      });
    } catch (e) {}
  }
  wrap(window.location, "assign");
  wrap(window.location, "replace");
  wrap(window, "open");
  var originalFetch = window.fetch;
  if (typeof originalFetch === "function") {
    window.fetch = function (input, init) {
      if (typeof URL === "function" && input instanceof URL) { input = input.href; }
      if (typeof input === "string") {
        input = toProxy(input);
      } else if (input && typeof input.url === "string") {
        var target = toProxy(input.url);
        if (target !== input.url) { input = new Request(target, input); }
      }
      return originalFetch.call(this, input, init);
    };
  }
})();
</script>
"""


@dataclass(frozen=True)
class RewriteRule:
    """A single substitution in the rewrite chain."""

    name: str
    pattern: re.Pattern
    replacement: Union[str, Callable[[re.Match], str]]
    html_only: bool = False
    count: int = 0
    # The rule is skipped when the text already contains this marker
    guard: Optional[str] = None

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text, count=self.count)


def is_rewritable_content_type(content_type: Optional[str]) -> bool:
    lowered = (content_type or "").lower()
    return any(marker in lowered for marker in REWRITABLE_CONTENT_TYPES)


def is_html_content_type(content_type: Optional[str]) -> bool:
    return "text/html" in (content_type or "").lower()


def _host_alternation(hosts: Iterable[str]) -> str:
    # Longest first so "orteil.dashnet.org" wins over "dashnet.org"
    ordered = sorted({h.lower() for h in hosts if h}, key=len, reverse=True)
    return "(?:" + "|".join(re.escape(h) for h in ordered) + ")"


def _to_prefix(path: str, prefix: str) -> str:
    """Map an origin path (possibly empty) onto the relay prefix."""
    if path == prefix or (
        path.startswith(prefix) and path[len(prefix)] in "/?#"
    ):
        return path
    if not path:
        return prefix
    if path[0] not in "/?#":
        path = "/" + path
    return prefix + path


def fetch_endpoint_url(url: str, fetch_path: str) -> str:
    return f"{fetch_path}?url={quote(url, safe=_URI_COMPONENT_SAFE)}"


def rewrite_origin_url(url: str, origin_hosts: Iterable[str], prefix: str) -> str:
    """
    Rewrite an absolute or protocol-relative origin URL onto the prefix.
    Anything else is returned unchanged.
    """
    match = re.match(
        rf"(?:https?:)?//{_host_alternation(origin_hosts)}(?::\d+)?(?![\w.-])",
        url,
        re.IGNORECASE,
    )
    if not match:
        return url
    return _to_prefix(url[match.end():], prefix)


def build_rewrite_rules(
    origin_hosts: Iterable[str],
    prefix: str,
    auxiliary_hosts: Iterable[str],
    fetch_path: str = "/fetch",
    inject_script: bool = True,
) -> List[RewriteRule]:
    """
    Build the ordered rule chain.

    ``origin_hosts`` are the origin hostname plus its aliases; they are
    rewritten onto ``prefix``. ``auxiliary_hosts`` are allow-listed CDNs that
    get routed through the fetch endpoint.
    """
    origin_hosts = [h.lower() for h in origin_hosts if h]
    origin_set = set(origin_hosts)
    auxiliary_hosts = [
        h.lower() for h in auxiliary_hosts if h and h.lower() not in origin_set
    ]
    origin_alt = _host_alternation(origin_hosts)
    escaped_prefix = re.escape(prefix)

    def _protocol_relative(match: re.Match) -> str:
        host = match.group("host").lower()
        rest = match.group("rest")
        if host in origin_set:
            return _to_prefix(re.sub(r"^:\d+", "", rest), prefix)
        return fetch_endpoint_url(f"https://{host}{rest}", fetch_path)

    rules = [
        RewriteRule(
            name="origin_prefixed_path",
            pattern=re.compile(
                rf"https?://{origin_alt}(?::\d+)?{escaped_prefix}(?![\w.-])",
                re.IGNORECASE,
            ),
            replacement=lambda _m: prefix,
        ),
        RewriteRule(
            name="origin_host",
            pattern=re.compile(
                rf"https?://{origin_alt}(?::\d+)?(?![\w.-])", re.IGNORECASE
            ),
            replacement=lambda _m: prefix,
        ),
    ]
    if auxiliary_hosts:
        rules.append(
            RewriteRule(
                name="auxiliary_host",
                pattern=re.compile(
                    rf"https?://{_host_alternation(auxiliary_hosts)}(?::\d+)?/{_URL_TAIL}",
                    re.IGNORECASE,
                ),
                replacement=lambda m: fetch_endpoint_url(m.group(0), fetch_path),
            )
        )
    # Attribute stripping must come after the URL rules: the integrity hashes
    # belong to resources whose URLs were just rewritten.
    rules.append(
        RewriteRule(
            name="strip_integrity",
            pattern=re.compile(
                r"\s(?:integrity|crossorigin)\s*=\s*(?:\"[^\"]*\"|'[^']*')",
                re.IGNORECASE,
            ),
            replacement="",
        )
    )
    rules.append(
        RewriteRule(
            name="protocol_relative",
            pattern=re.compile(
                rf"(?<=[\"'(=\s])//(?P<host>{_host_alternation(origin_hosts + auxiliary_hosts)})"
                rf"(?P<rest>(?::\d+)?(?:/{_URL_TAIL})?)(?![\w.-])",
                re.IGNORECASE,
            ),
            replacement=_protocol_relative,
        )
    )
    if inject_script:
        # Last, so the shim itself is never run through the URL rules in the same pass
        rules.append(
            RewriteRule(
                name="safety_script",
                pattern=re.compile(r"</head>", re.IGNORECASE),
                replacement=lambda m: safety_script(origin_hosts, prefix) + m.group(0),
                html_only=True,
                count=1,
                guard=SHIM_MARKER,
            )
        )
    return rules


def safety_script(origin_hosts: Iterable[str], prefix: str) -> str:
    """The client-side shim that redirects runtime-built origin URLs."""
    origin_pattern = (
        rf"^(?:https?:)?\/\/{_host_alternation(origin_hosts)}(?::\d+)?(?![\w.-])"
    )
    return _SHIM_TEMPLATE.replace("__PREFIX__", json.dumps(prefix)).replace(
        "__ORIGIN_PATTERN__", json.dumps(origin_pattern)
    )


def rewrite_text(
    text: str, rules: Iterable[RewriteRule], content_type: Optional[str] = None
) -> str:
    html = is_html_content_type(content_type)
    for rule in rules:
        if rule.html_only and not html:
            continue
        if rule.guard and rule.guard in text:
            continue
        text = rule.apply(text)
    return text
