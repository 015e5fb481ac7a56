"""Kenyan MSISDN handling for the gateway and for repayment references."""

from __future__ import annotations

import re

from salary_advance.core.settings import settings

_STRIP = re.compile(r"[\s\-()]")
_INTERNATIONAL = re.compile(r"^254(7|1)\d{8}$")
_REFERENCE = re.compile(r"^(\+?254|0)?(7|1)\d{8}$")


class InvalidPhoneNumber(ValueError):
    pass


def normalize_msisdn(raw: str | None, *, country_code: str | None = None) -> str:
    """Return ``<countrycode><subscriber>`` with no symbols, e.g. ``254722123456``."""
    code = country_code or settings.phone_country_code
    if raw is None:
        raise InvalidPhoneNumber("Phone number is required")
    phone = _STRIP.sub("", str(raw))
    if phone.startswith("+"):
        phone = phone[1:]

    if re.fullmatch(r"0\d{9}", phone):
        phone = code + phone[1:]
    elif re.fullmatch(r"\d{9}", phone):
        phone = code + phone
    elif re.fullmatch(code + r"\d{9}", phone):
        pass
    else:
        raise InvalidPhoneNumber(f"Invalid phone number format: {raw}")

    if code == "254" and not _INTERNATIONAL.match(phone):
        raise InvalidPhoneNumber(f"Invalid phone number format after sanitization: {raw}")
    return phone


def to_local(msisdn: str) -> str:
    """``254722123456`` -> ``0722123456``."""
    normalized = normalize_msisdn(msisdn)
    return "0" + normalized[3:]


def looks_like_phone(reference: str | None) -> bool:
    if not reference:
        return False
    return bool(_REFERENCE.match(_STRIP.sub("", reference)))


def phone_variants(msisdn: str) -> list[str]:
    """Every stored form a subscriber number is commonly saved in."""
    normalized = normalize_msisdn(msisdn)
    return [to_local(normalized), normalized, "+" + normalized]
