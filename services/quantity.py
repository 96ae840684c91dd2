import math
import re
from dataclasses import dataclass
from typing import Dict, Optional

from services.normalize import is_known_unit, normalize_unit

MULTIPACK_RE = re.compile(r"(\d+(?:\.\d+)?)\s*[x×]\s*(\d+(?:\.\d+)?)\s*([a-z]+)")
VALUE_UNIT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")
BARE_NUMBER_RE = re.compile(r"\b(\d+(?:\.\d+)?)\b")


@dataclass(frozen=True)
class ParsedQuantity:
    value: Optional[float]
    unit: Optional[str]
    confidence: float
    matched_span: str = ""

    @property
    def has_value(self) -> bool:
        return self.value is not None


def _to_number(raw: str) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def parse_quantity(text: str) -> ParsedQuantity:
    """Pull a quantity and unit out of one receipt or pantry line.

    Forms are tried in priority order: multipack ("2 x 400g"), value with
    unit ("1.5 lb", "12oz"), then a bare number. Only the first match of
    each form is considered; a zero or non-numeric candidate falls through
    to the next form.
    """
    lowered = str(text or "").strip().lower()
    if not lowered:
        return ParsedQuantity(value=None, unit=None, confidence=0.0)

    multi = MULTIPACK_RE.search(lowered)
    if multi:
        multiplier = _to_number(multi.group(1))
        base = _to_number(multi.group(2))
        if multiplier is not None and base is not None:
            unit = normalize_unit(multi.group(3))
            return ParsedQuantity(
                value=round(multiplier * base, 3),
                unit=unit,
                confidence=0.95 if is_known_unit(unit) else 0.75,
                matched_span=multi.group(0),
            )

    with_unit = VALUE_UNIT_RE.search(lowered)
    if with_unit:
        value = _to_number(with_unit.group(1))
        if value is not None:
            unit = normalize_unit(with_unit.group(2))
            return ParsedQuantity(
                value=value,
                unit=unit,
                confidence=0.9 if is_known_unit(unit) else 0.65,
                matched_span=with_unit.group(0),
            )

    bare = BARE_NUMBER_RE.search(lowered)
    if bare:
        value = _to_number(bare.group(1))
        if value is not None:
            return ParsedQuantity(value=value, unit=None, confidence=0.65, matched_span=bare.group(0))

    return ParsedQuantity(value=None, unit=None, confidence=0.2)


def parse_quantity_from_fields(
    quantity: Optional[str],
    unit: Optional[str] = None,
) -> Dict[str, Optional[object]]:
    """Parse manually entered pantry quantity/unit fields."""
    unit_normalized = normalize_unit(unit)
    if not str(quantity or "").strip():
        return {"quantity_value": None, "unit": unit_normalized}

    combined = f"{quantity} {unit or ''}".strip()
    parsed = parse_quantity(combined)
    if parsed.value is None:
        return {"quantity_value": None, "unit": unit_normalized}

    return {
        "quantity_value": parsed.value,
        "unit": parsed.unit or unit_normalized,
    }


def format_quantity(value: Optional[float]) -> Optional[str]:
    """Render a quantity for display: at most 3 decimals, no trailing zeros."""
    if value is None or not math.isfinite(value):
        return None
    return f"{round(value, 3):.3f}".rstrip("0").rstrip(".")
