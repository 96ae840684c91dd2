import logging
from typing import List

from pantry_pilot.llm.prompts import RECEIPT_SYSTEM_PROMPT
from services.confidence import LOW_CONFIDENCE_THRESHOLD, requires_confirmation
from services.llm_client import LlmClient, create_chat_completion_with_fallback
from services.llm_output import LlmOutputError, Parsed, recover_structured
from services.llm_schema import ReceiptExtraction
from services.normalize import normalize_name, normalize_unit
from services.receipt_lines import ParsedLineItem

logger = logging.getLogger(__name__)

DEFAULT_LLM_ROW_CONFIDENCE = 0.7


def extract_receipt_items_with_llm(
    client: LlmClient,
    ocr_text: str,
    *,
    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
) -> List[ParsedLineItem]:
    """Fallback extractor used when heuristic parsing of a receipt is too weak.

    Raises LlmRequestError when every model fails and LlmOutputError when
    the answer cannot be parsed after one repair round-trip.
    """
    user_prompt = "\n\n".join(
        [
            "Parse receipt OCR text into ingredient rows.",
            "OCR text:",
            ocr_text or "(empty OCR text)",
        ]
    )
    completion = create_chat_completion_with_fallback(
        client,
        [
            {"role": "system", "content": RECEIPT_SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
        temperature=0,
    )

    outcome = recover_structured(
        client,
        completion.content,
        ReceiptExtraction,
        temperature=0,
        system_prompt=RECEIPT_SYSTEM_PROMPT,
    )
    if not isinstance(outcome, Parsed):
        raise LlmOutputError(f"Receipt extraction output unparseable: {outcome.error}", raw=outcome.raw)

    rows: List[ParsedLineItem] = []
    for item in outcome.value.items:
        normalized = normalize_name(item.name)
        if not normalized:
            continue
        confidence = item.confidence if item.confidence is not None else DEFAULT_LLM_ROW_CONFIDENCE
        rows.append(
            ParsedLineItem(
                name=item.name,
                normalized_name=normalized,
                quantity_value=item.quantity_value,
                unit=normalize_unit(item.unit),
                raw_line=item.raw_line,
                confidence=confidence,
                requires_confirmation=requires_confirmation(confidence, low_confidence_threshold),
            )
        )

    logger.info("LLM receipt extraction via model=%s produced %d rows", completion.model, len(rows))
    return rows
