"""
OrderGuard — Unit tests: phone identity, name similarity, allow-list, client network
"""

import pytest

from orderguard.core.allowlist import AllowList
from orderguard.core.phone import (
    InvalidPhone, PhoneNumber, clean, is_valid_bd_phone, lookup_values, normalize, same_identity, variants,
)
from orderguard.core.similarity import levenshtein, name_similarity, normalize_name
from orderguard.services.network import (
    UNKNOWN_IP, behind_known_cdn, has_proxy_headers, parse_ip, resolve_client_ip,
)


# ===========================================================================
# ── Unit: Phone normalisation ───────────────────────────────────────────────
# ===========================================================================

class TestPhoneNormalize:
    @pytest.mark.parametrize("raw", [
        "01712345678",
        "8801712345678",
        "+8801712345678",
        "1712345678",
        "+880 1712-345678",
        "(017) 1234-5678",
        "01712-345678",
        " 01712 345 678 ",
    ])
    def test_accepted_shapes_share_one_canonical_form(self, raw):
        result = normalize(raw)
        assert isinstance(result, PhoneNumber)
        assert result.canonical == "01712345678"

    def test_operator_prefix_and_national(self):
        phone = normalize("01912345678")
        assert phone.operator_prefix == "019"
        assert phone.national == "1912345678"
        assert str(phone) == "01912345678"

    def test_too_short_is_invalid(self):
        result = normalize("0171234567")
        assert isinstance(result, InvalidPhone)
        assert not is_valid_bd_phone("0171234567")

    def test_unknown_operator_digit_is_invalid(self):
        assert isinstance(normalize("01212345678"), InvalidPhone)
        assert not is_valid_bd_phone("01012345678")

    def test_empty_input(self):
        result = normalize("")
        assert isinstance(result, InvalidPhone)
        assert result.reason == "empty"
        assert isinstance(normalize(None), InvalidPhone)

    def test_letters_rejected(self):
        assert normalize("01712abc678").reason == "non-digit characters"

    def test_foreign_country_code_rejected(self):
        assert normalize("+1 555 123 4567").reason == "foreign country code"

    def test_invalid_phone_is_falsy(self):
        assert not normalize("12345")
        assert normalize("01712345678")

    def test_clean_strips_separators_only(self):
        assert clean(" (017) 12-34 5678 ") == "01712345678"
        assert clean("+880-17") == "+88017"

    @pytest.mark.parametrize("raw", [
        "0171234567৮",
        "০১৭১২৩৪৫৬৭৮",
        "+৮৮০ ১৭১২-৩৪৫৬৭৮",
        "0171234567８",
    ])
    def test_non_ascii_digits_folded_to_ascii(self, raw):
        result = normalize(raw)
        assert result == PhoneNumber(canonical="01712345678")
        assert result.canonical.isascii()
        assert is_valid_bd_phone(raw)

    def test_digit_like_symbols_rejected(self):
        assert normalize("0171234567²").reason == "non-digit characters"

    def test_bengali_digits_share_lookup_values(self):
        assert lookup_values("০১৭১২৩৪৫৬৭৮") == lookup_values("01712345678")


class TestPhoneVariants:
    def test_variant_set(self):
        assert variants(normalize("01712345678")) == {
            "01712345678",
            "1712345678",
            "8801712345678",
            "+8801712345678",
        }

    def test_every_variant_normalises_back(self):
        phone = normalize("01812345678")
        for value in phone.variants():
            assert normalize(value) == phone

    def test_same_identity(self):
        assert same_identity(normalize("+8801712345678"), normalize("1712345678"))
        assert not same_identity(normalize("01712345678"), normalize("01712345679"))

    def test_lookup_values_valid_phone(self):
        assert lookup_values("+880 1712 345678") == variants(normalize("01712345678"))

    def test_lookup_values_invalid_phone_keeps_cleaned_input(self):
        assert lookup_values("555-0100") == {"5550100"}
        assert lookup_values("  ") == frozenset()


# ===========================================================================
# ── Unit: Name similarity ───────────────────────────────────────────────────
# ===========================================================================

class TestNameSimilarity:
    def test_levenshtein(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("same", "same") == 0

    def test_normalize_name(self):
        assert normalize_name("  Rahim   UDDIN ") == "rahim uddin"

    def test_identical_after_normalisation(self):
        assert name_similarity("Rahim Uddin", "rahim  uddin") == 100.0

    def test_one_letter_typo_is_similar(self):
        assert name_similarity("Rahim Uddin", "Rahim Udin") >= 80

    def test_different_names_are_not_similar(self):
        assert name_similarity("Karim Hossain", "Rahim Uddin") < 80

    @pytest.mark.parametrize("a, b", [
        ("Abdul Karim", "Abul Kalam"),
        ("Rahim Uddin", "Rahim"),
        ("Md. Hasan", "Hasan Md"),
        ("", "Karim"),
        ("Nusrat Jahan", "Nusrat Jahan"),
    ])
    def test_commutative(self, a, b):
        assert name_similarity(a, b) == name_similarity(b, a)

    @pytest.mark.parametrize("a, b", [
        ("Abdul Karim", "zzzzzzzzzzzzzzzz"),
        ("a", "bbbbbbbbbbbbbbbbbbbbbbbbbb"),
        ("", "Karim"),
        ("Rahim", "Rahim"),
    ])
    def test_bounded(self, a, b):
        assert 0.0 <= name_similarity(a, b) <= 100.0

    def test_completely_different_is_zero(self):
        assert name_similarity("abc", "xyz") == 0.0

    def test_decreases_with_each_extra_edit(self):
        # Same length throughout, one more substituted letter per step.
        base = "rahimuddin"
        chain = ["z" * i + base[i:] for i in range(len(base) + 1)]
        scores = [name_similarity(base, name) for name in chain]
        assert [levenshtein(base, name) for name in chain] == list(range(len(base) + 1))
        assert scores[0] == 100.0
        assert all(earlier > later for earlier, later in zip(scores, scores[1:]))
        assert scores[-1] == 0.0

    def test_both_empty(self):
        assert name_similarity("", "  ") == 100.0


# ===========================================================================
# ── Unit: Allow-list ────────────────────────────────────────────────────────
# ===========================================================================

class TestAllowList:
    def test_phone_matches_any_format(self):
        allow = AllowList.from_entries(phones=["+880 1712-345678"])
        assert allow.contains_phone(normalize("01712345678"))
        assert not allow.contains_phone(normalize("01812345678"))

    def test_exact_ip_and_cidr(self):
        allow = AllowList.from_entries(ips=["203.0.113.7", "10.0.0.0/8", "2001:db8::/32"])
        assert allow.contains_ip("203.0.113.7")
        assert allow.contains_ip("10.20.30.40")
        assert allow.contains_ip("2001:db8::1")
        assert not allow.contains_ip("8.8.8.8")
        assert not allow.contains_ip("not-an-ip")
        assert not allow.contains_ip("")

    def test_malformed_cidr_ignored(self):
        allow = AllowList.from_entries(ips=["10.0.0.0/99", "", "  "])
        assert not allow

    def test_from_strings_splits_phones_and_ips(self):
        allow = AllowList.from_strings(["01812345678", "192.168.0.0/16", "203.0.113.9"])
        assert allow.contains_phone(normalize("8801812345678"))
        assert allow.contains_ip("192.168.1.1")
        assert allow.contains_ip("203.0.113.9")

    def test_empty_is_falsy(self):
        assert not AllowList()


# ===========================================================================
# ── Unit: Client network helpers ────────────────────────────────────────────
# ===========================================================================

class TestClientIP:
    def test_parse_ip_strips_ports(self):
        assert parse_ip("203.0.113.5:443") == "203.0.113.5"
        assert parse_ip("[2001:db8::1]:8080") == "2001:db8::1"
        assert parse_ip("2001:db8::1") == "2001:db8::1"
        assert parse_ip("unknown") is None
        assert parse_ip("") is None

    def test_forwarded_for_takes_first_hop(self):
        headers = {"X-Forwarded-For": "203.0.113.5, 10.0.0.1"}
        assert resolve_client_ip(headers, "10.0.0.1") == "203.0.113.5"

    def test_cdn_header_wins(self):
        headers = {"CF-Connecting-IP": "198.51.100.2", "X-Forwarded-For": "203.0.113.5"}
        assert resolve_client_ip(headers) == "198.51.100.2"

    def test_rfc7239_forwarded(self):
        assert resolve_client_ip({"Forwarded": "for=192.0.2.60;proto=http;by=203.0.113.43"}) == "192.0.2.60"

    def test_garbage_header_falls_back_to_peer(self):
        assert resolve_client_ip({"X-Forwarded-For": "unknown"}, "198.51.100.9") == "198.51.100.9"

    def test_nothing_known(self):
        assert resolve_client_ip({}) == UNKNOWN_IP


class TestProxyHeaders:
    def test_via_header_flags_proxy(self):
        assert has_proxy_headers({"Via": "1.1 squid"})
        assert has_proxy_headers({"Proxy-Connection": "keep-alive"})

    def test_known_cdn_is_not_a_proxy(self):
        headers = {"Via": "1.1 varnish", "CF-Ray": "8a1b2c3d4e5f-DAC"}
        assert behind_known_cdn(headers)
        assert not has_proxy_headers(headers)

    def test_plain_request(self):
        assert not has_proxy_headers({"User-Agent": "Mozilla/5.0"})
