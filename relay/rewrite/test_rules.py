import pytest

from relay.rewrite.rules import (
    SHIM_MARKER,
    build_rewrite_rules,
    is_rewritable_content_type,
    rewrite_origin_url,
    rewrite_text,
    safety_script,
)

PREFIX = "/cookieclicker"
ORIGIN_HOSTS = ["orteil.dashnet.org", "dashnet.org"]
ALLOWED_HOSTS = [
    "orteil.dashnet.org",
    "dashnet.org",
    "ajax.googleapis.com",
    "fonts.googleapis.com",
    "fonts.gstatic.com",
    "cdn.jsdelivr.net",
    "cdnjs.cloudflare.com",
]

PAGE = """<!DOCTYPE html>
<html>
<head>
<link href="https://fonts.googleapis.com/css?family=Kavoon&display=swap" rel="stylesheet">
<script src="//ajax.googleapis.com/ajax/libs/jquery/3.6.0/jquery.min.js"></script>
<script src="https://cdn.jsdelivr.net/npm/a.js" integrity="sha384-abc" crossorigin="anonymous"></script>
<link rel="stylesheet" href="https://orteil.dashnet.org/cookieclicker/style.css">
</head>
<body>
<a href="https://orteil.dashnet.org/">Home</a>
<a href="http://dashnet.org/patreon">Support</a>
<img src="//orteil.dashnet.org/cookieclicker/img/perfectCookie.png">
<script>var ROOT = "https://orteil.dashnet.org/cookieclicker/";</script>
</body>
</html>
"""


@pytest.fixture
def rules():
    return build_rewrite_rules(ORIGIN_HOSTS, PREFIX, ALLOWED_HOSTS, fetch_path="/fetch")


def rewrite(text, rules, content_type="text/html"):
    return rewrite_text(text, rules, content_type)


class TestOriginUrls:
    def test_prefixed_path(self, rules):
        html = '<script src="https://orteil.dashnet.org/cookieclicker/main.js"></script>'
        assert rewrite(html, rules) == '<script src="/cookieclicker/main.js"></script>'

    def test_bare_origin_host(self, rules):
        html = '<a href="http://orteil.dashnet.org/patreon">'
        assert rewrite(html, rules) == '<a href="/cookieclicker/patreon">'

    def test_alias_host(self, rules):
        assert rewrite('<a href="https://dashnet.org/">', rules) == '<a href="/cookieclicker/">'

    def test_explicit_port(self, rules):
        js = "fetch('https://orteil.dashnet.org:443/cookieclicker/server.php')"
        assert rewrite(js, rules, "application/javascript") == (
            "fetch('/cookieclicker/server.php')"
        )

    def test_host_boundary(self, rules):
        """A longer hostname that merely starts with the origin is left alone."""
        text = '<a href="https://dashnet.org.example.com/x">'
        assert rewrite(text, rules) == text

    def test_prefix_boundary(self, rules):
        js = '"https://orteil.dashnet.org/cookieclickerbeta/"'
        assert rewrite(js, rules, "text/javascript") == '"/cookieclicker/cookieclickerbeta/"'

    def test_unrelated_hosts_untouched(self, rules):
        text = '<script src="https://example.com/a.js"></script>'
        assert rewrite(text, rules) == text

    def test_no_origin_hostname_left(self, rules):
        result = rewrite(PAGE, rules)
        assert "orteil.dashnet.org" not in result
        assert "dashnet.org" not in result
        assert 'href="/cookieclicker/style.css"' in result
        assert 'href="/cookieclicker/"' in result
        assert 'href="/cookieclicker/patreon"' in result
        assert 'src="/cookieclicker/img/perfectCookie.png"' in result
        assert 'var ROOT = "/cookieclicker/";' in result


class TestAuxiliaryHosts:
    def test_routed_through_fetch_endpoint(self, rules):
        html = '<link href="https://fonts.googleapis.com/css?family=Kavoon&display=swap" rel="stylesheet">'
        assert rewrite(html, rules) == (
            '<link href="/fetch?url=https%3A%2F%2Ffonts.googleapis.com%2Fcss'
            '%3Ffamily%3DKavoon%26display%3Dswap" rel="stylesheet">'
        )

    def test_unquoted_css_url(self, rules):
        css = "src: url(https://fonts.gstatic.com/s/kavoon/v1/a.woff2) format('woff2');"
        assert rewrite(css, rules, "text/css") == (
            "src: url(/fetch?url=https%3A%2F%2Ffonts.gstatic.com%2Fs%2Fkavoon"
            "%2Fv1%2Fa.woff2) format('woff2');"
        )

    def test_protocol_relative(self, rules):
        html = '<script src="//ajax.googleapis.com/ajax/libs/jquery/3.6.0/jquery.min.js"></script>'
        assert rewrite(html, rules) == (
            '<script src="/fetch?url=https%3A%2F%2Fajax.googleapis.com%2Fajax'
            '%2Flibs%2Fjquery%2F3.6.0%2Fjquery.min.js"></script>'
        )

    def test_protocol_relative_origin_goes_to_prefix(self, rules):
        css = "background: url(//orteil.dashnet.org/cookieclicker/img/bg.png);"
        assert rewrite(css, rules, "text/css") == "background: url(/cookieclicker/img/bg.png);"

    def test_comment_slashes_untouched(self, rules):
        js = "// fonts.gstatic.com is loaded elsewhere\nvar a = 1;"
        assert rewrite(js, rules, "application/javascript") == js


class TestIntegrityStripping:
    def test_integrity_and_crossorigin_removed(self, rules):
        html = (
            '<script src="https://cdn.jsdelivr.net/npm/a.js" '
            'integrity="sha384-abc" crossorigin="anonymous"></script>'
        )
        assert rewrite(html, rules) == (
            '<script src="/fetch?url=https%3A%2F%2Fcdn.jsdelivr.net%2Fnpm%2Fa.js"></script>'
        )

    def test_single_quoted_attributes(self, rules):
        html = "<link href='/x.css' integrity='sha256-x' crossorigin='use-credentials'>"
        assert rewrite(html, rules) == "<link href='/x.css'>"


class TestSafetyScript:
    def test_injected_before_head_close(self, rules):
        result = rewrite("<html><head><title>x</title></head><body></body></html>", rules)
        shim_at = result.index(SHIM_MARKER)
        assert shim_at < result.index("</head>")
        assert result.count(SHIM_MARKER) == 1

    def test_uppercase_head_tag(self, rules):
        result = rewrite("<HTML><HEAD></HEAD></HTML>", rules)
        assert result.index(SHIM_MARKER) < result.index("</HEAD>")

    def test_not_injected_without_head(self, rules):
        assert SHIM_MARKER not in rewrite("<p>fragment</p>", rules)

    def test_not_injected_into_scripts(self, rules):
        js = 'document.write("<head></head>");'
        assert rewrite(js, rules, "application/javascript") == js

    def test_disabled(self):
        rules = build_rewrite_rules(ORIGIN_HOSTS, PREFIX, ALLOWED_HOSTS, inject_script=False)
        assert SHIM_MARKER not in rewrite("<head></head>", rules)

    def test_script_patches_navigation_and_fetch(self):
        script = safety_script(ORIGIN_HOSTS, PREFIX)
        for target in ('"assign"', '"replace"', 'wrap(window, "open")', "window.fetch"):
            assert target in script
        assert '"/cookieclicker"' in script

    def test_script_contains_no_origin_url(self):
        """The shim must survive later passes of the URL rules untouched."""
        script = safety_script(ORIGIN_HOSTS, PREFIX)
        assert "dashnet.org" not in script
        assert "//" not in script


class TestIdempotence:
    @pytest.mark.parametrize(
        "content_type", ["text/html", "text/css", "application/javascript"]
    )
    def test_second_pass_changes_nothing(self, rules, content_type):
        once = rewrite(PAGE, rules, content_type)
        assert rewrite(once, rules, content_type) == once

    def test_no_duplicate_script(self, rules):
        twice = rewrite(rewrite(PAGE, rules), rules)
        assert twice.count(SHIM_MARKER) == 1
        assert "/cookieclicker/cookieclicker" not in twice


def test_rule_order(rules):
    assert [rule.name for rule in rules] == [
        "origin_prefixed_path",
        "origin_host",
        "auxiliary_host",
        "strip_integrity",
        "protocol_relative",
        "safety_script",
    ]


class TestRewriteOriginUrl:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://orteil.dashnet.org/cookieclicker/?v=2", "/cookieclicker/?v=2"),
            ("https://orteil.dashnet.org/", "/cookieclicker/"),
            ("https://orteil.dashnet.org", "/cookieclicker"),
            ("//dashnet.org/patreon", "/cookieclicker/patreon"),
            ("https://example.com/", "https://example.com/"),
            ("/cookieclicker/relative", "/cookieclicker/relative"),
        ],
    )
    def test_mapping(self, url, expected):
        assert rewrite_origin_url(url, ORIGIN_HOSTS, PREFIX) == expected


@pytest.mark.parametrize(
    "content_type, expected",
    [
        ("text/html; charset=utf-8", True),
        ("application/javascript", True),
        ("text/javascript", True),
        ("text/css", True),
        ("application/json", True),
        ("application/manifest+json", True),
        ("text/plain", True),
        ("image/png", False),
        ("font/woff2", False),
        ("", False),
        (None, False),
    ],
)
def test_is_rewritable_content_type(content_type, expected):
    assert is_rewritable_content_type(content_type) is expected
