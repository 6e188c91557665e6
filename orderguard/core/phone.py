"""
OrderGuard — Phone Identity Normalizer

Canonicalises Bangladeshi mobile numbers.  Storefront integrations write the
same subscriber in many shapes (``01712345678``, ``8801712345678``,
``+880 1712-345678``, ``০১৭১২৩৪৫৬৭৮`` …); everything here reduces them to
one canonical 11-ASCII-digit local form plus the set of textual variants a
heterogeneous order store may hold.

Invalid input is *returned* as an :class:`InvalidPhone` value, never raised.
A missing or foreign number is routine at checkout and simply means the
phone-based checks are skipped.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import FrozenSet, Union

# Separators stripped before matching: whitespace, hyphens, parentheses.
_SEPARATORS = re.compile(r"[\s\-()]+")

# Local canonical form: 01 + operator digit (3-9) + 8 subscriber digits.
_CANONICAL = re.compile(r"^01[3-9][0-9]{8}$")

_DIGITS = re.compile(r"^[0-9]+$")

COUNTRY_CODE = "880"


@dataclass(frozen=True)
class PhoneNumber:
    """A validated Bangladeshi mobile number in canonical ``01XXXXXXXXX`` form."""

    canonical: str

    @property
    def national(self) -> str:
        """Digits without the leading zero (``1XXXXXXXXX``)."""
        return self.canonical[1:]

    @property
    def operator_prefix(self) -> str:
        return self.canonical[:3]

    def variants(self) -> FrozenSet[str]:
        return variants(self)

    def __str__(self) -> str:
        return self.canonical


@dataclass(frozen=True)
class InvalidPhone:
    """Normalisation failure.  Falsy so callers can write ``if phone:``."""

    raw: str
    reason: str

    def __bool__(self) -> bool:
        return False


PhoneResult = Union[PhoneNumber, InvalidPhone]


def _ascii_digits(value: str) -> str:
    # Bengali (০-৯) and other Unicode decimal digits → 0-9
    return "".join(str(unicodedata.decimal(ch)) if ch.isdecimal() else ch for ch in value)


def clean(raw: str) -> str:
    """Strip whitespace, hyphens and parentheses; fold every decimal digit to ASCII."""
    return _ascii_digits(_SEPARATORS.sub("", raw or ""))


def normalize(raw: str) -> PhoneResult:
    """
    Reduce *raw* to a :class:`PhoneNumber`.

    ``+880`` / ``880`` prefixes are dropped; a bare 10-digit national number
    (``1XXXXXXXXX``, the no-leading-zero variant) gets its ``0`` back.
    """
    cleaned = clean(raw)
    if not cleaned:
        return InvalidPhone(raw=raw or "", reason="empty")

    digits = cleaned[1:] if cleaned.startswith("+") else cleaned
    if not _DIGITS.match(digits):
        return InvalidPhone(raw=raw, reason="non-digit characters")

    if digits.startswith(COUNTRY_CODE) and len(digits) > 11:
        digits = digits[len(COUNTRY_CODE):]
    elif cleaned.startswith("+"):
        return InvalidPhone(raw=raw, reason="foreign country code")

    if len(digits) == 10 and digits.startswith("1"):
        digits = "0" + digits

    if not _CANONICAL.match(digits):
        return InvalidPhone(raw=raw, reason="not a Bangladeshi mobile number")

    return PhoneNumber(canonical=digits)


def variants(phone: PhoneNumber) -> FrozenSet[str]:
    """Every textual form of *phone* that may appear in stored orders."""
    national = phone.national
    return frozenset({
        phone.canonical,                  # 01XXXXXXXXX
        national,                         # 1XXXXXXXXX
        COUNTRY_CODE + national,          # 8801XXXXXXXXX
        "+" + COUNTRY_CODE + national,    # +8801XXXXXXXXX
    })


def same_identity(a: PhoneNumber, b: PhoneNumber) -> bool:
    return not variants(a).isdisjoint(variants(b))


def is_valid_bd_phone(raw: str) -> bool:
    return isinstance(normalize(raw), PhoneNumber)


def lookup_values(raw: str) -> FrozenSet[str]:
    """
    Values to match *raw* against in storage: the variant set when *raw* is a
    valid number, otherwise just the separator-stripped input (may be empty).
    """
    result = normalize(raw)
    if isinstance(result, PhoneNumber):
        return variants(result)
    cleaned = clean(raw)
    return frozenset({cleaned}) if cleaned else frozenset()
