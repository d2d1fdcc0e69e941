"""Item value classification and numeric normalization.

Extracted values arrive untyped (number, string, or anything JSON can carry).
They are classified once into a tagged variant so a failed numeric parse is
visible instead of silently becoming zero:

- ``NumericValue``: the raw value was already a number
- ``TextValue``: a string; ``number`` is ``None`` when nothing parseable remained
- ``RawValue``: anything else (null, bool, list, object)

The canonical numeric form used for variance math is ``normalized``, which is
``0.0`` whenever no number could be recovered.
"""

from __future__ import annotations

import math
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

# Everything except digits, dot and minus is noise (currency symbols, separators, units)
_NOISE = re.compile(r"[^0-9.\-]")
_LEADING_NUMBER = re.compile(r"^-?(?:\d+\.?\d*|\.\d+)")


class NumericValue(BaseModel):
    kind: Literal["numeric"] = "numeric"
    raw: int | float
    number: float

    @property
    def normalized(self) -> float:
        return self.number


class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    raw: str
    number: float | None = None

    @property
    def parsed(self) -> bool:
        return self.number is not None

    @property
    def normalized(self) -> float:
        return self.number if self.number is not None else 0.0


class RawValue(BaseModel):
    kind: Literal["raw"] = "raw"
    raw: Any = None

    @property
    def normalized(self) -> float:
        return 0.0


ItemValue = Annotated[Union[NumericValue, TextValue, RawValue], Field(discriminator="kind")]


def parse_number(text: str) -> float | None:
    """Recover a number from free text.

    Strips every character that is not a digit, dot or minus sign, then reads
    the longest leading decimal number. ``"£1,250.50"`` gives ``1250.5``,
    ``"N/A"`` gives ``None``.
    """
    cleaned = _NOISE.sub("", text)
    match = _LEADING_NUMBER.match(cleaned)
    if not match:
        return None
    return float(match.group(0))


def classify_value(raw: Any) -> NumericValue | TextValue | RawValue:
    """Classify a raw extracted value into its tagged variant."""
    if isinstance(raw, bool):
        return RawValue(raw=raw)
    if isinstance(raw, (int, float)):
        if isinstance(raw, float) and not math.isfinite(raw):
            return RawValue(raw=raw)
        return NumericValue(raw=raw, number=float(raw))
    if isinstance(raw, str):
        return TextValue(raw=raw, number=parse_number(raw))
    return RawValue(raw=raw)


def normalize_value(raw: Any) -> float:
    """Canonical numeric form of a raw value (0.0 when nothing parses)."""
    return classify_value(raw).normalized
