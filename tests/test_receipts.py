from unittest.mock import MagicMock, patch

import pytest

from services import memory, pantry, receipts
from services.llm_client import LlmRequestError
from services.receipt_lines import ParsedLineItem
from services.text_source import TextExtraction, UnsupportedMimeTypeError

SETTINGS = {"low_confidence_threshold": 0.7, "ocr_escalation_confidence": 0.55}

RECEIPT_TEXT = "\n".join(
    [
        "Walmart Supercenter",
        "Bananas 2 lb",
        "Milk 1 gal 3.49",
        "Eggs 12",
        "Subtotal 12.99",
    ]
)


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(memory, "DB_PATH", tmp_path / "receipts_test.db")
    memory.init_db()
    yield


def _llm_row(name="Bread", confidence=0.9):
    return ParsedLineItem(
        name=name,
        normalized_name=name.lower(),
        quantity_value=1.0,
        unit=None,
        raw_line=name.upper(),
        confidence=confidence,
        requires_confirmation=False,
    )


def _store_receipt(items=()):
    return receipts.create_receipt_with_items(
        file_path="data/uploads/receipts/r.png",
        mime_type="image/png",
        original_name="r.png",
        ocr_text=RECEIPT_TEXT,
        ocr_confidence=0.9,
        items=list(items),
    )


def test_parse_receipt_keeps_confident_heuristic_rows():
    client = MagicMock()
    with patch("services.receipts.extract_receipt_items_with_llm") as mock_llm:
        result = receipts.parse_receipt(RECEIPT_TEXT, 0.9, client, settings=SETTINGS)

    assert result.source == "heuristic"
    assert result.escalated is False
    assert [row.normalized_name for row in result.rows] == ["banana", "milk", "egg"]
    mock_llm.assert_not_called()


@patch("services.receipts.extract_receipt_items_with_llm")
def test_parse_receipt_escalates_on_low_ocr_confidence(mock_llm):
    mock_llm.return_value = [_llm_row()]

    result = receipts.parse_receipt(RECEIPT_TEXT, 0.3, MagicMock(), settings=SETTINGS)

    assert result.escalated is True
    assert result.source == "llm"
    assert [row.name for row in result.rows] == ["Bread"]


@patch("services.receipts.extract_receipt_items_with_llm")
def test_parse_receipt_keeps_heuristic_rows_when_llm_fails(mock_llm):
    mock_llm.side_effect = LlmRequestError("down", status=503)

    result = receipts.parse_receipt(RECEIPT_TEXT, 0.3, MagicMock(), settings=SETTINGS)

    assert result.escalated is True
    assert result.source == "heuristic"
    assert len(result.rows) == 3
    assert "down" in result.llm_error


def test_parse_receipt_without_client_does_not_escalate_to_llm():
    result = receipts.parse_receipt("", 0.0, None, settings=SETTINGS)
    assert result.escalated is True
    assert result.rows == []
    assert result.source == "heuristic"


@patch("services.receipts.extract_receipt_items_with_llm")
def test_parse_receipt_recomputes_confirmation(mock_llm):
    mock_llm.return_value = [_llm_row(confidence=0.75)]

    result = receipts.parse_receipt("x", 0.0, MagicMock(), settings=dict(SETTINGS, low_confidence_threshold=0.8))

    assert result.rows[0].requires_confirmation is True


def test_create_and_get_receipt():
    rows = receipts.parse_receipt(RECEIPT_TEXT, 0.9, settings=SETTINGS).rows
    receipt = _store_receipt(rows)

    assert receipt["status"] == receipts.STATUS_PENDING
    assert receipt["original_name"] == "r.png"
    assert [item["normalized_name"] for item in receipt["line_items"]] == ["banana", "milk", "egg"]
    assert receipt["line_items"][0]["confirmed"] is False

    fetched = receipts.get_receipt_with_items(receipt["id"])
    assert fetched["ocr_text"] == RECEIPT_TEXT


def test_get_missing_receipt():
    with pytest.raises(receipts.ReceiptNotFoundError):
        receipts.get_receipt_with_items(999)


def test_apply_receipt_items_merges_into_pantry():
    pantry.create_pantry_item("Tomatoes", "4")
    receipt = _store_receipt()

    lines = [
        {"name": "Tomato", "quantity_value": 2, "confidence": 0.9},
        {"name": "Bananas", "quantity_value": 2, "unit": "lb", "confidence": 0.95},
        {"name": "banana", "quantity_value": 1, "unit": "lbs", "confidence": 0.95},
        {"name": "Store Coupon", "confidence": 0.2},
        {"name": "Soda", "quantity_value": 1, "confidence": 0.99, "ignored": True},
        {"name": "Parsley", "confidence": 0.4, "confirmed": True},
    ]
    result = receipts.apply_receipt_items(receipt["id"], lines, threshold=0.7)

    assert result == {"created": 2, "updated": 2, "skipped": 2}

    items = {item.normalized_name: item for item in pantry.get_pantry_snapshot()}
    assert items["tomato"].quantity_value == 6.0
    assert items["tomato"].quantity == "6"
    assert items["banana"].quantity_value == 3.0
    assert items["banana"].unit == "lb"
    assert items["parsley"].quantity_value is None
    assert "soda" not in items

    stored = receipts.get_receipt_with_items(receipt["id"])
    assert stored["status"] == receipts.STATUS_APPLIED
    assert stored["applied_at"] is not None
    assert [item["name"] for item in stored["line_items"]] == [line["name"] for line in lines]
    assert stored["line_items"][4]["ignored"] is True
    assert stored["line_items"][5]["confirmed"] is True


def test_apply_uses_reviewer_rename():
    pantry.create_pantry_item("Banana", "2", "lb")
    receipt = _store_receipt(receipts.parse_receipt(RECEIPT_TEXT, 0.9, settings=SETTINGS).rows)
    row = dict(receipt["line_items"][0])
    assert row["normalized_name"] == "banana"
    row.update(name="Apples", confirmed=True)

    result = receipts.apply_receipt_items(receipt["id"], [row], threshold=0.7)

    assert result == {"created": 1, "updated": 0, "skipped": 0}
    items = {item.normalized_name: item for item in pantry.get_pantry_snapshot()}
    assert items["banana"].quantity_value == 2.0
    assert items["apple"].quantity_value == 2.0
    stored = receipts.get_receipt_with_items(receipt["id"])
    assert stored["line_items"][0]["normalized_name"] == "apple"


def test_apply_missing_receipt_changes_nothing():
    with pytest.raises(receipts.ReceiptNotFoundError):
        receipts.apply_receipt_items(404, [{"name": "Milk", "confidence": 0.9}], threshold=0.7)
    assert pantry.list_pantry_items() == []


def test_apply_rolls_back_on_failure():
    receipt = _store_receipt()
    lines = [
        {"name": "Milk", "quantity_value": 1, "confidence": 0.9},
        {"name": "Eggs", "quantity_value": 12, "confidence": 0.9},
    ]

    with patch("services.receipts.metrics.record_merge", side_effect=[None, RuntimeError("boom")]):
        with pytest.raises(RuntimeError):
            receipts.apply_receipt_items(receipt["id"], lines, threshold=0.7)

    assert pantry.list_pantry_items() == []
    assert receipts.get_receipt_with_items(receipt["id"])["status"] == receipts.STATUS_PENDING


@patch("services.receipts.extract_text")
def test_import_receipt_file(mock_extract, tmp_path, monkeypatch):
    uploads = tmp_path / "uploads"
    monkeypatch.setattr(receipts, "get_uploads_dir", lambda: uploads)
    source = tmp_path / "receipt.png"
    source.write_bytes(b"fake image")
    mock_extract.return_value = TextExtraction(text=RECEIPT_TEXT, confidence=0.9, provider="tesseract")

    receipt = receipts.import_receipt_file(source)

    stored_path = mock_extract.call_args.args[0]
    assert stored_path.startswith(str(uploads))
    assert mock_extract.call_args.args[1] == "image/png"
    assert receipt["original_name"] == "receipt.png"
    assert receipt["parse"]["source"] == "heuristic"
    assert len(receipt["line_items"]) == 3
    assert len(receipt["run_id"]) == 12


@patch("services.receipts.extract_text")
def test_import_receipt_pdf_tool_missing(mock_extract, tmp_path, monkeypatch):
    monkeypatch.setattr(receipts, "get_uploads_dir", lambda: tmp_path / "uploads")
    source = tmp_path / "receipt.pdf"
    source.write_bytes(b"%PDF-1.4")
    mock_extract.return_value = TextExtraction(text="", confidence=0.0, error_code="pdf_tool_missing")

    with pytest.raises(receipts.ReceiptImportError):
        receipts.import_receipt_file(source)


def test_import_receipt_rejects_unsupported_files(tmp_path):
    source = tmp_path / "notes.txt"
    source.write_text("hello", encoding="utf-8")

    with pytest.raises(UnsupportedMimeTypeError):
        receipts.import_receipt_file(source)
    with pytest.raises(FileNotFoundError):
        receipts.import_receipt_file(tmp_path / "missing.png")


def test_preview_receipt_items_writes_nothing():
    pantry.create_pantry_item("Milk", "1", "gallon")
    receipt = receipts.create_receipt_with_items(
        file_path=None, mime_type="image/png", original_name="r.png",
        ocr_text="Milk 1 gal", ocr_confidence=0.9, items=[],
    )
    lines = [
        {"name": "Milk", "quantity_value": 1, "unit": "gal", "confidence": 0.9},
        {"name": "Eggs", "quantity_value": 12, "confidence": 0.9},
        {"name": "Eggs", "quantity_value": 6, "confidence": 0.9},
    ]

    plan = receipts.preview_receipt_items(receipt["id"], lines, threshold=0.7)

    assert [entry["action"] for entry in plan] == ["update", "create", "update"]
    assert plan[0]["result"]["quantity_value"] == 2.0
    assert plan[2]["result"]["quantity_value"] == 18.0
    assert len(pantry.get_pantry_snapshot()) == 1
    assert receipts.get_receipt_with_items(receipt["id"])["status"] == receipts.STATUS_PENDING


def test_preview_unknown_receipt():
    with pytest.raises(receipts.ReceiptNotFoundError):
        receipts.preview_receipt_items(999, [])
