import math
from typing import Any, Optional

from book import LEGACY_STATUSES, STATUSES


class TextValidator:
    """Text cleanup for free-text and required fields."""

    @staticmethod
    def clean_optional(text: Optional[str]) -> Optional[str]:
        """Strip ``text``; blank becomes None."""
        if text is None:
            return None
        t = str(text).strip()
        return t or None

    @staticmethod
    def require(text: Optional[str], field: str) -> str:
        t = TextValidator.clean_optional(text)
        if t is None:
            raise ValueError(f"{field} is required.")
        return t


class BookValidator:
    """Field rules shared by the API, the batch import and the CLI."""

    @staticmethod
    def identity_key(value: Any) -> Optional[str]:
        """ISBNs and external catalog ids are compared exactly; only surrounding whitespace is dropped."""
        if value is None:
            return None
        return TextValidator.clean_optional(str(value))

    @staticmethod
    def status(value: Optional[str]) -> str:
        if value is None or not str(value).strip():
            return STATUSES[0]
        s = str(value).strip()
        if s in STATUSES:
            return s
        if s in LEGACY_STATUSES:
            return LEGACY_STATUSES[s]
        raise ValueError(f"Invalid status '{s}'. Expected one of: {', '.join(STATUSES)}.")

    @staticmethod
    def rating(value: Any, field: str = "rating") -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            r = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{field} must be a number.")
        if math.isnan(r) or r < 0 or r > 10:
            raise ValueError(f"{field} must be between 0 and 10.")
        return r

    @staticmethod
    def non_negative_int(value: Any, field: str, maximum: Optional[int] = None) -> int:
        if value is None or value == "":
            return 0
        try:
            n = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{field} must be an integer.")
        if n < 0 or (maximum is not None and n > maximum):
            bound = f"between 0 and {maximum}" if maximum is not None else "0 or greater"
            raise ValueError(f"{field} must be {bound}.")
        return n
