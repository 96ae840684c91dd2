"""Confidence scoring for parsed receipt lines and the LLM escalation policy."""
from typing import Any, Sequence

LOW_CONFIDENCE_THRESHOLD = 0.7
OCR_ESCALATION_CONFIDENCE = 0.55
MIN_ROWS_FOR_RATIO_CHECK = 4
LOW_CONFIDENCE_ROW_SHARE = 0.75
MISSING_QUANTITY_ROW_SHARE = 0.85

MIN_CONFIDENCE = 0.05
MAX_CONFIDENCE = 0.99


def score_confidence(
    *,
    extractor_confidence: float,
    item_score: float,
    noise_score: float,
    name: str,
    has_quantity: bool,
    has_recognized_unit: bool,
) -> float:
    confidence = max(extractor_confidence, 0.5) + item_score * 0.12 - noise_score * 0.1
    if len(name or "") > 2:
        confidence += 0.1
    if has_quantity and has_recognized_unit:
        confidence += 0.05
    return round(min(max(confidence, MIN_CONFIDENCE), MAX_CONFIDENCE), 2)


def requires_confirmation(confidence: float, threshold: float = LOW_CONFIDENCE_THRESHOLD) -> bool:
    return confidence < threshold


def _row_value(row: Any, key: str) -> Any:
    if isinstance(row, dict):
        return row.get(key)
    return getattr(row, key, None)


def should_escalate_to_llm(
    ocr_confidence: float,
    rows: Sequence[Any],
    *,
    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
    ocr_escalation_confidence: float = OCR_ESCALATION_CONFIDENCE,
) -> bool:
    """Decide whether heuristic rows are too weak to keep.

    Rows may be ParsedLineItem objects or plain dicts with ``confidence``
    and ``quantity_value``. Between one and three rows are never escalated:
    too few samples to judge.
    """
    if ocr_confidence < ocr_escalation_confidence or not rows:
        return True

    if len(rows) < MIN_ROWS_FOR_RATIO_CHECK:
        return False

    total = len(rows)
    low_confidence = sum(
        1 for row in rows if float(_row_value(row, "confidence") or 0.0) < low_confidence_threshold
    )
    missing_quantity = sum(1 for row in rows if _row_value(row, "quantity_value") is None)

    return (
        low_confidence / total >= LOW_CONFIDENCE_ROW_SHARE
        or missing_quantity / total >= MISSING_QUANTITY_ROW_SHARE
    )
