import csv
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from services.command_runner import CommandRunner, ToolNotInstalledError

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}
PDF_MIME_TYPE = "application/pdf"
ACCEPTED_MIME_TYPES = IMAGE_MIME_TYPES | {PDF_MIME_TYPE}

PDF_TEXT_CONFIDENCE = 0.95
OCR_TIMEOUT_SECONDS = 120

COMMAND_RUNNER = CommandRunner(timeout=OCR_TIMEOUT_SECONDS)


class UnsupportedMimeTypeError(ValueError):
    pass


@dataclass
class TextExtraction:
    text: str
    confidence: float
    provider: str = "none"
    error_code: Optional[str] = None


def _failed(error_code: str) -> TextExtraction:
    return TextExtraction(text="", confidence=0.0, provider="none", error_code=error_code)


def parse_tesseract_tsv(tsv: str) -> Tuple[str, float]:
    """Rebuild text line by line from tesseract TSV output.

    Returns the text and the mean word confidence scaled to 0..1. Words
    with a negative confidence are layout rows, not words.
    """
    lines: Dict[Tuple[str, str, str, str], List[str]] = {}
    confidences: List[float] = []
    reader = csv.DictReader((tsv or "").splitlines(), delimiter="\t", quoting=csv.QUOTE_NONE)
    for row in reader:
        word = (row.get("text") or "").strip()
        try:
            conf = float(row.get("conf") or -1)
        except ValueError:
            conf = -1.0
        if not word or conf < 0:
            continue
        key = (row.get("page_num", ""), row.get("block_num", ""), row.get("par_num", ""), row.get("line_num", ""))
        lines.setdefault(key, []).append(word)
        confidences.append(conf)

    text = "\n".join(" ".join(words) for words in lines.values()).strip()
    if not confidences:
        return text, 0.0
    mean = sum(confidences) / len(confidences)
    return text, round(max(0.0, min(mean, 100.0)) / 100, 2)


def _ocr_image(path: str) -> TextExtraction:
    try:
        stdout = COMMAND_RUNNER.run("tesseract", [path, "stdout", "tsv"])
    except ToolNotInstalledError as exc:
        logger.error("Cannot OCR %s: %s", path, exc)
        return _failed("ocr_tool_missing")
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        logger.error("OCR failed for %s: %s", path, exc)
        return _failed("ocr_failed")

    text, confidence = parse_tesseract_tsv(stdout)
    if not text:
        return _failed("ocr_failed")
    return TextExtraction(text=text, confidence=confidence, provider="tesseract")


def _pdf_text(path: str) -> TextExtraction:
    try:
        stdout = COMMAND_RUNNER.run("pdftotext", ["-layout", path, "-"])
    except ToolNotInstalledError as exc:
        logger.error("Cannot read %s: %s", path, exc)
        return _failed("pdf_tool_missing")
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        logger.error("PDF text extraction failed for %s: %s", path, exc)
        return _failed("ocr_failed")

    text = stdout.strip()
    if not text:
        # Scanned PDFs have no text layer.
        return _failed("pdf_no_text")
    return TextExtraction(text=text, confidence=PDF_TEXT_CONFIDENCE, provider="pdftotext")


def extract_text(path: str, mime_kind: str) -> TextExtraction:
    """Extract receipt text from an image or PDF.

    Tool failures never raise: they come back as empty text with zero
    confidence so the escalation policy can react.
    """
    if mime_kind not in ACCEPTED_MIME_TYPES:
        raise UnsupportedMimeTypeError(f"Unsupported receipt file type '{mime_kind}'.")
    if mime_kind == PDF_MIME_TYPE:
        return _pdf_text(path)
    return _ocr_image(path)
