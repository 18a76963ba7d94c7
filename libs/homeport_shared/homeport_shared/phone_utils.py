"""Phone number canonicalization.

Everything here is pure: no I/O, no clocks, same inputs give the same
output. Numbering-plan rules come from the ``phonenumbers`` metadata
(libphonenumber), so length and prefix checks are data-driven per region.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Optional, Union

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat, ValidationResult


_STRIP_RE = re.compile(r"[^\d+]")
_LOCALE_REGION_RE = re.compile(r"^[A-Za-z]{2,3}[-_](?:[A-Za-z]{4}[-_])?([A-Za-z]{2})(?:$|[-_])")


class NormalizationErrorKind(str, enum.Enum):
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    INVALID_FOR_REGION = "invalid_for_region"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class NormalizationError:
    """Returned (never raised) when user input cannot be canonicalized."""

    kind: NormalizationErrorKind
    raw: str
    region: Optional[str] = None

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class PhoneNumber:
    raw: str
    region: Optional[str]
    e164: str

    def __str__(self) -> str:
        return self.e164


NormalizeResult = Union[PhoneNumber, NormalizationError]


_PARSE_ERRORS = {
    NumberParseException.INVALID_COUNTRY_CODE: NormalizationErrorKind.INVALID_FOR_REGION,
    NumberParseException.NOT_A_NUMBER: NormalizationErrorKind.UNPARSEABLE,
    NumberParseException.TOO_SHORT_AFTER_IDD: NormalizationErrorKind.TOO_SHORT,
    NumberParseException.TOO_SHORT_NSN: NormalizationErrorKind.TOO_SHORT,
    NumberParseException.TOO_LONG: NormalizationErrorKind.TOO_LONG,
}

_POSSIBILITY_ERRORS = {
    ValidationResult.INVALID_COUNTRY_CODE: NormalizationErrorKind.INVALID_FOR_REGION,
    ValidationResult.TOO_SHORT: NormalizationErrorKind.TOO_SHORT,
    ValidationResult.IS_POSSIBLE_LOCAL_ONLY: NormalizationErrorKind.TOO_SHORT,
    ValidationResult.TOO_LONG: NormalizationErrorKind.TOO_LONG,
    ValidationResult.INVALID_LENGTH: NormalizationErrorKind.INVALID_FOR_REGION,
}


def clean_phone_input(raw: str) -> str:
    """Drop everything but digits, keeping a single leading ``+``.

    A leading ``00`` international prefix is treated like ``+``.
    """
    text = (raw or "").strip()
    leading_plus = text.startswith("+")
    digits = _STRIP_RE.sub("", text).replace("+", "")
    if not leading_plus and digits.startswith("00") and len(digits) > 2:
        return "+" + digits[2:]
    return ("+" + digits) if leading_plus else digits


def is_known_region(region: Optional[str]) -> bool:
    return bool(region) and region.upper() in phonenumbers.SUPPORTED_REGIONS


def normalize_phone(raw: str, region: Optional[str] = None) -> NormalizeResult:
    """Canonicalize ``raw`` to E.164.

    Numbers carrying a country calling code (leading ``+``) are validated
    against that country's plan and ``region`` is ignored. Otherwise
    ``region`` supplies the calling code. Returns a :class:`PhoneNumber` on
    success or a :class:`NormalizationError` describing the failure.
    """
    if not isinstance(raw, str):
        return NormalizationError(NormalizationErrorKind.UNPARSEABLE, raw=repr(raw), region=region)
    region_code = region.upper() if is_known_region(region) else None
    cleaned = clean_phone_input(raw)
    if not cleaned.lstrip("+"):
        return NormalizationError(NormalizationErrorKind.UNPARSEABLE, raw=raw, region=region_code)
    if not cleaned.startswith("+") and region_code is None:
        return NormalizationError(NormalizationErrorKind.INVALID_FOR_REGION, raw=raw, region=None)

    try:
        parsed = phonenumbers.parse(cleaned, None if cleaned.startswith("+") else region_code)
    except NumberParseException as exc:
        kind = _PARSE_ERRORS.get(exc.error_type, NormalizationErrorKind.UNPARSEABLE)
        return NormalizationError(kind, raw=raw, region=region_code)

    possibility = phonenumbers.is_possible_number_with_reason(parsed)
    if possibility != ValidationResult.IS_POSSIBLE:
        kind = _POSSIBILITY_ERRORS.get(possibility, NormalizationErrorKind.INVALID_FOR_REGION)
        return NormalizationError(kind, raw=raw, region=region_code)
    if not phonenumbers.is_valid_number(parsed):
        return NormalizationError(NormalizationErrorKind.INVALID_FOR_REGION, raw=raw, region=region_code)

    return PhoneNumber(
        raw=raw,
        region=phonenumbers.region_code_for_number(parsed),
        e164=phonenumbers.format_number(parsed, PhoneNumberFormat.E164),
    )


def normalize_phone_e164(phone: str, default_region: Optional[str] = None) -> str:
    """Convenience wrapper returning the E.164 string, or "" when invalid."""
    result = normalize_phone(phone, default_region)
    return result.e164 if isinstance(result, PhoneNumber) else ""


def region_from_locale(accept_language: Optional[str]) -> Optional[str]:
    """Pick the first supported region subtag from an Accept-Language header.

    ``"es-DO,es;q=0.9"`` -> ``"DO"``. Tags are ranked by their ``q`` weight,
    header order breaking ties.
    """
    if not accept_language:
        return None
    weighted: list[tuple[float, int, str]] = []
    for index, part in enumerate(accept_language.split(",")):
        tag, _, params = part.strip().partition(";")
        weight = 1.0
        params = params.strip()
        if params.startswith("q="):
            try:
                weight = float(params[2:])
            except ValueError:
                weight = 0.0
        weighted.append((-weight, index, tag.strip()))
    for _, _, tag in sorted(weighted):
        m = _LOCALE_REGION_RE.match(tag)
        if m and is_known_region(m.group(1)):
            return m.group(1).upper()
    return None


def resolve_region(
    explicit: Optional[str] = None,
    preferred: Optional[str] = None,
    accept_language: Optional[str] = None,
    fallback: Optional[str] = None,
) -> Optional[str]:
    """Choose the region applied to numbers typed without a calling code.

    Order: explicit UI selection, persisted user preference, locale default,
    hard fallback. Unknown region codes are skipped.
    """
    for candidate in (explicit, preferred):
        if is_known_region(candidate):
            return candidate.upper()
    from_locale = region_from_locale(accept_language)
    if from_locale:
        return from_locale
    if is_known_region(fallback):
        return fallback.upper()
    return None


def mask_phone(phone: str, visible_digits: int = 4) -> str:
    if not phone:
        return ""
    if len(phone) <= visible_digits:
        return phone
    head = "+" if phone.startswith("+") else ""
    body = phone[len(head):]
    return head + "*" * max(len(body) - visible_digits, 0) + body[-visible_digits:]


__all__ = [
    "NormalizationErrorKind",
    "NormalizationError",
    "PhoneNumber",
    "NormalizeResult",
    "clean_phone_input",
    "is_known_region",
    "normalize_phone",
    "normalize_phone_e164",
    "region_from_locale",
    "resolve_region",
    "mask_phone",
]
