from __future__ import annotations

import logging
from typing import Optional, Protocol

import phonenumbers

from contactcache.rules.errors import PhoneNormalizationError


_logger = logging.getLogger("phone")


class PhoneNormalizer(Protocol):
    def normalize(self, raw: str) -> str:
        ...


class E164PhoneNormalizer:
    """Formats numbers as E.164, parsing national numbers in the default region."""

    def __init__(self, region: str = "US") -> None:
        self.region = (region or "US").strip().upper()

    def normalize(self, raw: str) -> str:
        text = str(raw or "").strip()
        if not text:
            raise PhoneNormalizationError("empty phone number")
        try:
            parsed = phonenumbers.parse(text, self.region)
        except phonenumbers.NumberParseException as e:
            raise PhoneNormalizationError(f"unparsable phone number: {e}") from e
        formatted = phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
        if not formatted or formatted == "+":
            raise PhoneNormalizationError("phone number formatted empty")
        return formatted


def normalize_or_none(normalizer: PhoneNormalizer, raw: Optional[str]) -> Optional[str]:
    """Normalized number, or None when the input is blank or cannot be formatted."""
    text = str(raw or "").strip()
    if not text:
        return None
    try:
        out = normalizer.normalize(text)
    except (PhoneNormalizationError, ValueError) as e:
        _logger.debug("phone dimension skipped error=%s", e)
        return None
    return out or None
