from __future__ import annotations

import unittest
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from brainiac_gateway.hosts import canonical_hostname, is_private_host
from brainiac_gateway.urls import (
    build_search_url,
    join_endpoint,
    normalize_base_url,
    normalize_search_base_url,
    parse_url,
)


class HostClassifierTests(unittest.TestCase):
    def test_private_hosts(self) -> None:
        for host in (
            "localhost",
            "printer.local",
            "127.0.0.1",
            "::1",
            "10.0.0.5",
            "192.168.1.1",
            "172.16.0.1",
            "172.31.255.255",
            "169.254.1.1",
            "fd00::1",
            "fc00::1",
            "fe80::1",
        ):
            with self.subTest(host=host):
                self.assertTrue(is_private_host(host))

    def test_public_hosts(self) -> None:
        for host in ("172.15.0.1", "172.32.0.1", "8.8.8.8", "example.com", "100.1.2.3", "api.openai.com"):
            with self.subTest(host=host):
                self.assertFalse(is_private_host(host))

    def test_classifier_lowercases_and_never_raises(self) -> None:
        self.assertTrue(is_private_host("LOCALHOST"))
        self.assertTrue(is_private_host("FE80::1"))
        self.assertFalse(is_private_host(""))
        self.assertFalse(is_private_host("not a host at all"))

    def test_canonical_hostname_expands_numeric_ipv4_forms(self) -> None:
        self.assertEqual(canonical_hostname("2130706433"), "127.0.0.1")
        self.assertEqual(canonical_hostname("0x7f.1"), "127.0.0.1")
        self.assertEqual(canonical_hostname("127.1"), "127.0.0.1")
        self.assertEqual(canonical_hostname("LocalHost."), "localhost")
        self.assertEqual(canonical_hostname("0:0:0:0:0:0:0:1"), "::1")
        self.assertEqual(canonical_hostname("example.com"), "example.com")

    def test_canonical_hostname_decodes_percent_escapes_once(self) -> None:
        self.assertEqual(canonical_hostname("%31%32%37.0.0.1"), "127.0.0.1")
        self.assertEqual(canonical_hostname("localhos%74"), "localhost")
        self.assertEqual(canonical_hostname("%6c%6f%63%61%6c%68%6f%73%74"), "localhost")
        self.assertEqual(canonical_hostname("%2531.0.0.1"), "%31.0.0.1")
        self.assertTrue(is_private_host(canonical_hostname("%31%30.0.0.5")))


class UrlNormalizerTests(unittest.TestCase):
    def test_normalize_strips_trailing_slash(self) -> None:
        self.assertEqual(normalize_base_url("https://api.example.com/v1/"), "https://api.example.com/v1")

    def test_normalize_drops_query_and_fragment(self) -> None:
        self.assertEqual(normalize_base_url("https://x.com/a?b=c#frag"), "https://x.com/a")

    def test_normalize_blank_input(self) -> None:
        self.assertEqual(normalize_base_url(""), "")
        self.assertEqual(normalize_base_url("   "), "")
        self.assertEqual(normalize_base_url(None), "")

    def test_normalize_unparseable_falls_back_to_raw(self) -> None:
        self.assertEqual(normalize_base_url("not a url///"), "not a url")

    def test_normalize_canonicalizes_host_and_default_port(self) -> None:
        self.assertEqual(normalize_base_url("HTTPS://API.Example.com:443/v1"), "https://api.example.com/v1")
        self.assertEqual(normalize_base_url("http://example.com:8080/"), "http://example.com:8080")

    def test_normalize_is_idempotent(self) -> None:
        for raw in (
            "https://api.example.com/v1/",
            "https://x.com/a?b=c#frag",
            "https://x.com",
            "http://user@example.com:8080/a//",
            "https://[fd00::1]/v1/",
            "javascript:alert(1)",
            "not a url/",
        ):
            with self.subTest(raw=raw):
                once = normalize_base_url(raw)
                self.assertEqual(normalize_base_url(once), once)

    def test_search_normalizer_strips_search_segment(self) -> None:
        self.assertEqual(normalize_search_base_url("https://search.example.org/search/"), "https://search.example.org")
        self.assertEqual(normalize_search_base_url("https://search.example.org/search?q=x"), "https://search.example.org")
        self.assertEqual(normalize_search_base_url("https://example.org/api/search"), "https://example.org/api")
        self.assertEqual(normalize_search_base_url("https://example.org/searches"), "https://example.org/searches")

    def test_search_normalizer_strips_search_segment_without_parsing(self) -> None:
        self.assertEqual(normalize_search_base_url("search.example.org/search/"), "search.example.org")

    def test_join_endpoint_uses_exactly_one_slash(self) -> None:
        expected = "https://api.openai.com/v1/responses"
        self.assertEqual(join_endpoint("https://api.openai.com/v1", "/responses"), expected)
        self.assertEqual(join_endpoint("https://api.openai.com/v1", "responses"), expected)
        self.assertEqual(join_endpoint("https://api.openai.com/v1/", "//responses"), expected)
        self.assertEqual(join_endpoint("https://api.openai.com", "/v1/responses"), expected)

    def test_join_endpoint_keeps_query_characters_in_path(self) -> None:
        self.assertEqual(
            join_endpoint("https://api.example.com", "/models?x=1"),
            "https://api.example.com/models%3Fx=1",
        )

    def test_build_search_url_encodes_parameters(self) -> None:
        self.assertEqual(
            build_search_url("https://search.example.org", "cats & dogs", "json"),
            "https://search.example.org/search?q=cats+%26+dogs&format=json",
        )

    def test_parse_url_rejects_relative_and_hostless_values(self) -> None:
        for raw in ("", "example.com", "/relative/path", "http://", "https://host:99999/", "http://a\\@b.com/"):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    parse_url(raw)

    def test_parse_url_rejects_hosts_a_client_cannot_connect_to(self) -> None:
        for raw in (
            "https://" + "a" * 64 + ".example.com/",
            "http://a..com/",
            "http://%2531%2532%2537.0.0.1/",
            "http://127.0.0.1%3a80/",
            "http://exa%20mple.com/",
        ):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    parse_url(raw)

    def test_parse_url_decodes_percent_encoded_host(self) -> None:
        self.assertEqual(parse_url("http://%31%32%37.0.0.1:8080/v1").netloc, "127.0.0.1:8080")
        self.assertEqual(normalize_base_url("https://Api.Example%2ecom/v1/"), "https://api.example.com/v1")

    def test_parse_url_accepts_other_schemes(self) -> None:
        self.assertEqual(parse_url("ftp://files.example.com/x").scheme, "ftp")
        self.assertEqual(parse_url("file:///etc/passwd").scheme, "file")
        self.assertEqual(parse_url("http://2130706433/").hostname, "127.0.0.1")
