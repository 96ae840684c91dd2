import logging
import mimetypes
import shutil
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from pantry_pilot.config import get_receipt_settings, get_uploads_dir
from pantry_pilot.logging import log_event, run_context
from services import memory, metrics
from services.confidence import requires_confirmation, should_escalate_to_llm
from services.llm_client import LlmClient, LlmRequestError
from services.llm_output import LlmOutputError
from services.merge import (
    MergeCreate,
    MergeSkip,
    MergeUpdate,
    ReviewedLine,
    apply_decision_to_snapshot,
    decide_merge_for_line,
    describe_decision,
    plan_merges,
)
from services.normalize import normalize_name
from services.pantry import read_snapshot
from services.receipt_extraction import extract_receipt_items_with_llm
from services.receipt_lines import ParsedLineItem, parse_receipt_text
from services.text_source import ACCEPTED_MIME_TYPES, UnsupportedMimeTypeError, extract_text

logger = logging.getLogger(__name__)

MAX_UPLOAD_SIZE_BYTES = 8 * 1024 * 1024

STATUS_PENDING = "pending"
STATUS_APPLIED = "applied"


class ReceiptNotFoundError(LookupError):
    def __init__(self, receipt_id: Any):
        super().__init__(f"Receipt {receipt_id} not found.")
        self.receipt_id = receipt_id


class ReceiptImportError(RuntimeError):
    pass


@dataclass
class ReceiptParseResult:
    rows: List[ParsedLineItem] = field(default_factory=list)
    source: str = "heuristic"
    escalated: bool = False
    llm_error: Optional[str] = None


def _get_conn() -> sqlite3.Connection:
    return memory.get_conn()


def parse_receipt(
    text: str,
    ocr_confidence: float,
    client: Optional[LlmClient] = None,
    *,
    settings: Optional[Dict[str, float]] = None,
) -> ReceiptParseResult:
    """Classify receipt text into rows, escalating to the LLM when they look weak.

    Without a client, or when the LLM fails, the heuristic rows are kept.
    """
    settings = settings or get_receipt_settings()
    threshold = settings["low_confidence_threshold"]

    rows = parse_receipt_text(text, low_confidence_threshold=threshold)
    escalated = should_escalate_to_llm(
        ocr_confidence,
        rows,
        low_confidence_threshold=threshold,
        ocr_escalation_confidence=settings["ocr_escalation_confidence"],
    )
    result = ReceiptParseResult(rows=rows, escalated=escalated)

    if escalated and client is not None and client.settings.has_api_key:
        try:
            result.rows = extract_receipt_items_with_llm(client, text, low_confidence_threshold=threshold)
            result.source = "llm"
        except (LlmRequestError, LlmOutputError) as exc:
            logger.error("LLM receipt fallback failed; keeping heuristic rows: %s", exc)
            result.llm_error = str(exc)
    elif escalated:
        logger.info("Receipt rows look weak but no LLM client is configured")

    # Recompute so every row agrees with the configured threshold.
    for row in result.rows:
        row.requires_confirmation = requires_confirmation(row.confidence, threshold)

    metrics.record_receipt_parse(result.source, len(result.rows), escalated)
    return result


def _line_item_dict(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["confirmed"] = bool(data.get("confirmed"))
    data["ignored"] = bool(data.get("ignored"))
    return data


def _item_field(item: Any, key: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        return item.get(key, default)
    return getattr(item, key, default)


def _insert_line_items(con: sqlite3.Connection, receipt_id: int, items: Sequence[Any]) -> None:
    for item in items:
        name = str(_item_field(item, "name") or "")
        con.execute(
            """
            INSERT INTO receipt_line_items (
                receipt_id, name, normalized_name, quantity_value, unit,
                raw_line, confidence, confirmed, ignored
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                receipt_id,
                name,
                _item_field(item, "normalized_name") or normalize_name(name),
                _item_field(item, "quantity_value"),
                _item_field(item, "unit"),
                _item_field(item, "raw_line") or name,
                _item_field(item, "confidence"),
                1 if _item_field(item, "confirmed", False) else 0,
                1 if _item_field(item, "ignored", False) else 0,
            ),
        )


def create_receipt_with_items(
    *,
    file_path: Optional[str],
    mime_type: Optional[str],
    original_name: Optional[str],
    ocr_text: str,
    ocr_confidence: Optional[float],
    items: Sequence[Any],
) -> Dict[str, Any]:
    con = _get_conn()
    try:
        cur = con.execute(
            """
            INSERT INTO receipts (file_path, mime_type, original_name, ocr_text, ocr_confidence)
            VALUES (?, ?, ?, ?, ?)
            """,
            (file_path, mime_type, original_name, ocr_text or "", ocr_confidence),
        )
        receipt_id = int(cur.lastrowid)
        _insert_line_items(con, receipt_id, items)
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()

    logger.info("Stored receipt %s with %d line items", receipt_id, len(items))
    return get_receipt_with_items(receipt_id)


def get_receipt_with_items(receipt_id: int) -> Dict[str, Any]:
    con = _get_conn()
    try:
        row = con.execute("SELECT * FROM receipts WHERE id = ?", (receipt_id,)).fetchone()
        if row is None:
            raise ReceiptNotFoundError(receipt_id)
        receipt = dict(row)
        cur = con.execute(
            "SELECT * FROM receipt_line_items WHERE receipt_id = ? ORDER BY id ASC",
            (receipt_id,),
        )
        receipt["line_items"] = [_line_item_dict(item) for item in cur.fetchall()]
        return receipt
    finally:
        con.close()


def apply_receipt_items(
    receipt_id: int,
    lines: Sequence[Union[ReviewedLine, Dict[str, Any]]],
    *,
    threshold: Optional[float] = None,
) -> Dict[str, int]:
    """Merge reviewed lines into the pantry in a single transaction.

    Each decision sees the pantry as left by the previous lines, so two
    lines for the same product add up instead of creating duplicates.
    """
    if threshold is None:
        threshold = get_receipt_settings()["low_confidence_threshold"]
    reviewed = [line if isinstance(line, ReviewedLine) else ReviewedLine.from_dict(line) for line in lines]
    counts = {"created": 0, "updated": 0, "skipped": 0}

    con = _get_conn()
    try:
        exists = con.execute("SELECT 1 FROM receipts WHERE id = ?", (receipt_id,)).fetchone()
        if exists is None:
            raise ReceiptNotFoundError(receipt_id)

        working = read_snapshot(con)
        for line in reviewed:
            decision = decide_merge_for_line(line, working, threshold)
            metrics.record_merge(decision.action)

            if isinstance(decision, MergeSkip):
                logger.debug("Skipping receipt line %r: %s", line.name, decision.reason)
                counts["skipped"] += 1
                continue

            data = decision.data
            if isinstance(decision, MergeUpdate):
                con.execute(
                    """
                    UPDATE pantry_items
                    SET normalized_name = ?, quantity = ?, quantity_value = ?, unit = ?,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (data.normalized_name, data.quantity, data.quantity_value, data.unit, decision.pantry_item_id),
                )
                working = apply_decision_to_snapshot(working, decision)
                counts["updated"] += 1
            elif isinstance(decision, MergeCreate):
                cur = con.execute(
                    """
                    INSERT INTO pantry_items (name, normalized_name, quantity, quantity_value, unit)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (data.name, data.normalized_name, data.quantity, data.quantity_value, data.unit),
                )
                working = apply_decision_to_snapshot(working, decision, item_id=int(cur.lastrowid))
                counts["created"] += 1

        con.execute("DELETE FROM receipt_line_items WHERE receipt_id = ?", (receipt_id,))
        _insert_line_items(con, receipt_id, reviewed)
        con.execute(
            "UPDATE receipts SET status = ?, applied_at = CURRENT_TIMESTAMP WHERE id = ?",
            (STATUS_APPLIED, receipt_id),
        )
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()

    log_event(logger, logging.INFO, f"Applied receipt {receipt_id}", receipt_id=receipt_id, **counts)
    return counts


def preview_receipt_items(
    receipt_id: int,
    lines: Sequence[Union[ReviewedLine, Dict[str, Any]]],
    *,
    threshold: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """Plan what applying ``lines`` would do, without writing anything."""
    if threshold is None:
        threshold = get_receipt_settings()["low_confidence_threshold"]
    reviewed = [line if isinstance(line, ReviewedLine) else ReviewedLine.from_dict(line) for line in lines]

    con = _get_conn()
    try:
        if con.execute("SELECT 1 FROM receipts WHERE id = ?", (receipt_id,)).fetchone() is None:
            raise ReceiptNotFoundError(receipt_id)
        snapshot = read_snapshot(con)
    finally:
        con.close()

    return [describe_decision(line, decision) for line, decision in plan_merges(reviewed, snapshot, threshold)]


def guess_mime_type(path: Union[str, Path]) -> str:
    mime_type, _ = mimetypes.guess_type(str(path))
    return mime_type or "application/octet-stream"


def import_receipt_file(
    path: Union[str, Path],
    *,
    mime_type: Optional[str] = None,
    client: Optional[LlmClient] = None,
) -> Dict[str, Any]:
    """Copy a receipt into the uploads folder, read it and store the parsed rows.

    Returns the stored receipt with its line items plus a ``parse`` summary.
    """
    source = Path(path)
    if not source.is_file():
        raise FileNotFoundError(f"Receipt file not found: {source}")

    mime_type = mime_type or guess_mime_type(source)
    if mime_type not in ACCEPTED_MIME_TYPES:
        raise UnsupportedMimeTypeError("Only jpg/jpeg/png/webp images and PDF files are supported.")
    if source.stat().st_size > MAX_UPLOAD_SIZE_BYTES:
        raise ReceiptImportError(f"File exceeds max size of {MAX_UPLOAD_SIZE_BYTES} bytes.")

    uploads_dir = get_uploads_dir()
    uploads_dir.mkdir(parents=True, exist_ok=True)
    suffix = source.suffix.lower() or mimetypes.guess_extension(mime_type) or ""
    stored = uploads_dir / f"{int(time.time() * 1000)}-{uuid.uuid4().hex}{suffix}"
    shutil.copyfile(source, stored)

    with run_context() as run_id:
        log_event(logger, logging.INFO, f"Importing receipt {source.name}", stored=stored.name, mime_type=mime_type)
        extraction = extract_text(str(stored), mime_type)
        if extraction.error_code == "pdf_tool_missing":
            raise ReceiptImportError(
                "PDF processing tools are missing. Install poppler-utils (pdftotext) and retry."
            )
        if extraction.error_code:
            logger.warning("Text extraction for %s failed with %s", source.name, extraction.error_code)

        parsed = parse_receipt(extraction.text, extraction.confidence, client)
        receipt = create_receipt_with_items(
            file_path=str(stored),
            mime_type=mime_type,
            original_name=source.name,
            ocr_text=extraction.text,
            ocr_confidence=extraction.confidence,
            items=parsed.rows,
        )
    receipt["run_id"] = run_id
    receipt["parse"] = {
        "source": parsed.source,
        "escalated": parsed.escalated,
        "llm_error": parsed.llm_error,
        "ocr_error": extraction.error_code,
        "rows": [row.to_dict() for row in parsed.rows],
    }
    return receipt
