import pytest

from homeport_shared.phone_utils import (
    NormalizationError,
    NormalizationErrorKind,
    PhoneNumber,
    clean_phone_input,
    mask_phone,
    normalize_phone,
    normalize_phone_e164,
    region_from_locale,
    resolve_region,
)


@pytest.mark.parametrize(
    "raw,region,expected",
    [
        ("+1 (809) 555-1234", None, "+18095551234"),
        ("809-555-1234", "DO", "+18095551234"),
        ("809.555.1234", "do", "+18095551234"),
        ("612 345 678", "ES", "+34612345678"),
        ("+963 996 428 955", "ES", "+963996428955"),
        ("00963996428955", "DO", "+963996428955"),
    ],
)
def test_normalize_valid_numbers(raw, region, expected):
    result = normalize_phone(raw, region)
    assert isinstance(result, PhoneNumber)
    assert result.e164 == expected
    assert result.raw == raw


def test_region_of_result_comes_from_number():
    result = normalize_phone("+18095551234")
    assert isinstance(result, PhoneNumber)
    assert result.region == "DO"


@pytest.mark.parametrize(
    "raw,region",
    [
        ("+18095551234", "DO"),
        ("612345678", "ES"),
        ("+963996428955", None),
    ],
)
def test_normalize_is_idempotent(raw, region):
    first = normalize_phone(raw, region)
    assert isinstance(first, PhoneNumber)
    for other_region in (region, None, "ES", "DO", "US"):
        again = normalize_phone(first.e164, other_region)
        assert isinstance(again, PhoneNumber)
        assert again.e164 == first.e164


def test_normalize_is_deterministic():
    assert normalize_phone("809 555 1234", "DO") == normalize_phone("809 555 1234", "DO")
    assert normalize_phone("abc", "DO") == normalize_phone("abc", "DO")


@pytest.mark.parametrize(
    "raw,region,kind",
    [
        ("abc", "DO", NormalizationErrorKind.UNPARSEABLE),
        ("", "DO", NormalizationErrorKind.UNPARSEABLE),
        ("+", None, NormalizationErrorKind.UNPARSEABLE),
        ("+1 809 555", None, NormalizationErrorKind.TOO_SHORT),
        ("+1 809 555 1234 5678", None, NormalizationErrorKind.TOO_LONG),
        ("+999 123 456 789", None, NormalizationErrorKind.INVALID_FOR_REGION),
        ("8095551234", None, NormalizationErrorKind.INVALID_FOR_REGION),
    ],
)
def test_normalize_reports_error_kind(raw, region, kind):
    result = normalize_phone(raw, region)
    assert isinstance(result, NormalizationError)
    assert result.kind == kind
    assert not result


def test_normalize_never_raises_on_non_string():
    result = normalize_phone(None, "DO")  # type: ignore[arg-type]
    assert isinstance(result, NormalizationError)
    assert result.kind == NormalizationErrorKind.UNPARSEABLE


def test_unknown_region_is_ignored_for_international_input():
    result = normalize_phone("+18095551234", "ZZ")
    assert isinstance(result, PhoneNumber)


def test_clean_phone_input_keeps_only_leading_plus():
    assert clean_phone_input(" +1 (809) 555-1234 ") == "+18095551234"
    assert clean_phone_input("809+555") == "809555"
    assert clean_phone_input("tel: 809 555") == "809555"


def test_normalize_phone_e164_returns_empty_on_failure():
    assert normalize_phone_e164("+18095551234") == "+18095551234"
    assert normalize_phone_e164("not a phone", "DO") == ""


def test_resolve_region_precedence():
    assert resolve_region("do", "ES", "fr-CA", "US") == "DO"
    assert resolve_region("ZZ", "es", "fr-CA", "US") == "ES"
    assert resolve_region(None, None, "fr-CA,fr;q=0.9", "US") == "CA"
    assert resolve_region(None, None, "fr", "US") == "US"
    assert resolve_region(None, None, None, None) is None


def test_region_from_locale_respects_weights():
    assert region_from_locale("en;q=0.5, es-DO;q=0.8, en-US;q=0.7") == "DO"
    assert region_from_locale("zh-Hant-TW") == "TW"
    assert region_from_locale("es-419, en_GB") == "GB"
    assert region_from_locale("") is None


def test_mask_phone():
    assert mask_phone("+18095551234") == "+*******1234"
    assert mask_phone("123") == "123"
    assert mask_phone("") == ""
