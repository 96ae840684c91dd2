import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from services.confidence import LOW_CONFIDENCE_THRESHOLD, requires_confirmation, score_confidence
from services.normalize import is_known_unit, normalize_name, normalize_unit
from services.quantity import ParsedQuantity, parse_quantity

logger = logging.getLogger(__name__)

# Signal name -> weight. Signals are independent booleans and all that fire
# are summed into the matching accumulator.
NOISE_WEIGHTS: Dict[str, float] = {
    "meta_term": 0.4,
    "strong_meta_term": 0.75,
    "phone": 0.6,
    "street_address": 0.75,
    "state_zip": 0.75,
    "register_tags": 0.75,
    "negative_amount": 0.75,
    "bare_zip": 0.35,
    "date": 0.5,
    "time": 0.45,
    "long_digit_run": 0.45,
    "street_suffix_with_state": 0.35,
    "digit_heavy": 0.35,
    "symbol_heavy": 0.3,
    "weak_token_shape": 0.3,
}

ITEM_WEIGHTS: Dict[str, float] = {
    "recognized_unit": 0.45,
    "has_quantity": 0.25,
    "long_token": 0.2,
    "token_count": 0.15,
    "trailing_price": 0.2,
    "alpha_heavy": 0.2,
    "low_digit": 0.1,
}

NOISE_REJECT_SCORE = 0.7
NOISE_REJECT_MARGIN = 0.25

STRONG_META_TERMS = [
    "subtotal",
    "sub total",
    "total",
    "balance due",
    "amount due",
    "change due",
    "thank you",
    "thanks for shopping",
    "survey",
    "feedback",
    "tax",
    "sales tax",
    "cash",
    "visa",
    "mastercard",
    "amex",
    "debit",
    "tender",
    "approved",
    "approval",
    "you saved",
    "coupon",
    "discount",
    "items sold",
    "receipt",
    "cashier",
    "supercenter",
    "walmart",
    "kroger",
    "costco",
    "safeway",
    "publix",
    "aldi",
    "lidl",
    "target",
    "whole foods",
    "trader joe",
    "wegmans",
    "meijer",
    "sprouts",
    "tesco",
    "sainsbury",
]

META_TERMS = [
    "change",
    "credit",
    "card",
    "tend",
    "auth",
    "member",
    "savings",
    "points",
    "rewards",
    "store",
    "manager",
    "mgr",
    "register",
    "terminal",
    "trans",
    "tran",
    "ref",
    "tel",
    "phone",
    "www",
    "com",
    "return",
    "policy",
    "open",
    "hours",
]

STREET_SUFFIXES = {
    "st", "street", "ave", "avenue", "rd", "road", "blvd", "boulevard", "dr", "drive",
    "ln", "lane", "way", "hwy", "highway", "pkwy", "parkway", "ct", "court", "pl", "place",
}

STATE_CODES = {
    "al", "ak", "az", "ar", "ca", "co", "ct", "de", "fl", "ga", "hi", "id", "il", "in", "ia",
    "ks", "ky", "la", "me", "md", "ma", "mi", "mn", "ms", "mo", "mt", "ne", "nv", "nh", "nj",
    "nm", "ny", "nc", "nd", "oh", "ok", "or", "pa", "ri", "sc", "sd", "tn", "tx", "ut", "vt",
    "va", "wa", "wv", "wi", "wy", "dc",
}


def _term_pattern(terms: List[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(term) for term in sorted(terms, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


STRONG_META_RE = _term_pattern(STRONG_META_TERMS)
META_RE = _term_pattern(META_TERMS)
PHONE_RE = re.compile(r"(?:\(\d{3}\)\s*|\b\d{3}[\s.\-])\d{3}[\s.\-]\d{4}\b")
STREET_ADDRESS_RE = re.compile(
    r"\b\d{1,6}\s+(?:[a-z0-9.']+\s+){0,3}(?:%s)\b\.?" % "|".join(sorted(STREET_SUFFIXES)),
    re.IGNORECASE,
)
STATE_ZIP_RE = re.compile(r"\b[A-Z]{2}\s*,?\s+\d{5}(?:-\d{4})?\b")
ZIP_RE = re.compile(r"\b\d{5}(?:-\d{4})?\b")
# Register footers tag their numbers: "ST# 1234 OP# 5 TE# 12".
REGISTER_TAG_RE = re.compile(r"\b[A-Z]{2}#", re.IGNORECASE)
NEGATIVE_AMOUNT_RE = re.compile(r"(?:^|\s)-\s?\$?\d+[.,]\d{2}\b|\b\d+[.,]\d{2}-(?:\s|$)")
DATE_RES = [
    re.compile(r"\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b"),
    re.compile(r"\b\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}\b"),
    re.compile(
        r"\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{2,4}\b",
        re.IGNORECASE,
    ),
]
TIME_RE = re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?\s*(?:[ap]\.?m\.?)?\b", re.IGNORECASE)
LONG_DIGIT_RUN_RE = re.compile(r"\d{6,}")
TRAILING_PRICE_RE = re.compile(r"\$?\d+[.,]\d{2}\s*[a-z]?\s*$", re.IGNORECASE)
LEADING_MARKUP_RE = re.compile(r"^[\s*#\-:•·>|=_~]+")
LETTER_RE = re.compile(r"[A-Za-z]")
TOKEN_STRIP_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)


@dataclass
class ParsedLineItem:
    name: str
    normalized_name: str
    quantity_value: Optional[float]
    unit: Optional[str]
    raw_line: str
    confidence: float
    requires_confirmation: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LineScores:
    noise_score: float = 0.0
    item_score: float = 0.0
    noise_signals: List[str] = field(default_factory=list)
    item_signals: List[str] = field(default_factory=list)

    @property
    def rejected(self) -> bool:
        return (
            self.noise_score >= NOISE_REJECT_SCORE
            or round(self.noise_score - self.item_score, 3) >= NOISE_REJECT_MARGIN
        )


def clean_line(raw_line: str) -> str:
    stripped = LEADING_MARKUP_RE.sub("", str(raw_line or ""))
    return " ".join(stripped.split()).strip()


def extract_name_from_line(cleaned: str, matched_span: str) -> str:
    if not matched_span:
        return cleaned

    escaped = re.escape(matched_span)
    if re.match(rf"^{escaped}\b", cleaned, re.IGNORECASE):
        return re.sub(rf"^{escaped}\s*", "", cleaned, count=1, flags=re.IGNORECASE).strip()

    if re.search(rf"\b{escaped}$", cleaned, re.IGNORECASE):
        return re.sub(rf"\s*{escaped}$", "", cleaned, count=1, flags=re.IGNORECASE).strip()

    removed = re.sub(escaped, "", cleaned, count=1, flags=re.IGNORECASE)
    return " ".join(removed.split())


def _char_ratios(text: str) -> Tuple[float, float, float]:
    chars = [ch for ch in text if not ch.isspace()]
    if not chars:
        return 0.0, 0.0, 0.0
    total = len(chars)
    alpha = sum(1 for ch in chars if ch.isalpha())
    digits = sum(1 for ch in chars if ch.isdigit())
    symbols = total - alpha - digits
    return alpha / total, digits / total, symbols / total


def _name_tokens(name: str) -> List[str]:
    tokens = []
    for raw in name.split():
        token = TOKEN_STRIP_RE.sub("", raw)
        if token:
            tokens.append(token)
    return tokens


def _is_reference_number(cleaned: str, quantity: ParsedQuantity, has_unit: bool) -> bool:
    """A bare zip code or a "#"-tagged number is not an amount bought."""
    span = quantity.matched_span
    if has_unit or not span:
        return False
    if ZIP_RE.fullmatch(span):
        return True
    return bool(re.search(rf"#\s*{re.escape(span)}\b", cleaned, re.IGNORECASE))


def score_line(
    cleaned: str,
    name: str,
    quantity: ParsedQuantity,
    *,
    noise_weights: Optional[Mapping[str, float]] = None,
    item_weights: Optional[Mapping[str, float]] = None,
) -> LineScores:
    """Accumulate noise and item evidence for one cleaned receipt line."""
    noise_w = noise_weights or NOISE_WEIGHTS
    item_w = item_weights or ITEM_WEIGHTS
    scores = LineScores()

    def _noise(signal: str) -> None:
        scores.noise_signals.append(signal)
        scores.noise_score += noise_w.get(signal, 0.0)

    def _item(signal: str) -> None:
        scores.item_signals.append(signal)
        scores.item_score += item_w.get(signal, 0.0)

    has_unit = quantity.value is not None and is_known_unit(quantity.unit)
    has_trailing_price = bool(TRAILING_PRICE_RE.search(cleaned))
    lowered_tokens = {token.lower() for token in _name_tokens(cleaned)}

    if STRONG_META_RE.search(cleaned):
        _noise("strong_meta_term")
    elif META_RE.search(cleaned):
        _noise("meta_term")
    if PHONE_RE.search(cleaned):
        _noise("phone")
    if not has_unit and STREET_ADDRESS_RE.search(cleaned):
        _noise("street_address")
    if STATE_ZIP_RE.search(cleaned):
        _noise("state_zip")
    elif not has_unit and ZIP_RE.search(cleaned):
        _noise("bare_zip")
    if any(pattern.search(cleaned) for pattern in DATE_RES):
        _noise("date")
    if TIME_RE.search(cleaned):
        _noise("time")
    if LONG_DIGIT_RUN_RE.search(cleaned):
        _noise("long_digit_run")
    if len(REGISTER_TAG_RE.findall(cleaned)) >= 2:
        _noise("register_tags")
    if NEGATIVE_AMOUNT_RE.search(cleaned):
        _noise("negative_amount")
    if not has_unit and lowered_tokens & STREET_SUFFIXES and lowered_tokens & STATE_CODES:
        _noise("street_suffix_with_state")

    _, name_digit_ratio, name_symbol_ratio = _char_ratios(name)
    if name_digit_ratio >= 0.45:
        _noise("digit_heavy")
    if name_symbol_ratio >= 0.22:
        _noise("symbol_heavy")

    tokens = _name_tokens(name)
    long_tokens = [t for t in tokens if len(t) >= 3 and LETTER_RE.search(t)]
    short_tokens = [t for t in tokens if len(t) < 3]
    if (
        short_tokens
        and len(long_tokens) < max(1, len(short_tokens))
        and not has_unit
        and not has_trailing_price
    ):
        _noise("weak_token_shape")

    if has_unit:
        _item("recognized_unit")
    if quantity.value is not None and not _is_reference_number(cleaned, quantity, has_unit):
        _item("has_quantity")
    if long_tokens:
        _item("long_token")
    if 1 <= len(tokens) <= 6:
        _item("token_count")
    if has_trailing_price:
        _item("trailing_price")
    name_alpha_ratio, _, _ = _char_ratios(name)
    if name_alpha_ratio >= 0.55:
        _item("alpha_heavy")
    if name_digit_ratio <= 0.35:
        _item("low_digit")

    scores.noise_score = round(scores.noise_score, 3)
    scores.item_score = round(scores.item_score, 3)
    return scores


def parse_receipt_line(
    raw_line: str,
    *,
    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
    noise_weights: Optional[Mapping[str, float]] = None,
    item_weights: Optional[Mapping[str, float]] = None,
) -> Optional[ParsedLineItem]:
    cleaned = clean_line(raw_line)
    if len(cleaned) < 2 or not LETTER_RE.search(cleaned):
        return None

    quantity = parse_quantity(cleaned)
    candidate = extract_name_from_line(cleaned, quantity.matched_span)
    without_price = TRAILING_PRICE_RE.sub("", candidate).strip()
    if LETTER_RE.search(without_price):
        candidate = without_price
    name = candidate or cleaned

    scores = score_line(
        cleaned,
        name,
        quantity,
        noise_weights=noise_weights,
        item_weights=item_weights,
    )
    if scores.rejected:
        logger.debug(
            "Rejected receipt line %r noise=%.3f item=%.3f signals=%s",
            cleaned,
            scores.noise_score,
            scores.item_score,
            scores.noise_signals,
        )
        return None

    normalized = normalize_name(name)
    if not normalized:
        return None

    confidence = score_confidence(
        extractor_confidence=quantity.confidence,
        item_score=scores.item_score,
        noise_score=scores.noise_score,
        name=name,
        has_quantity=quantity.value is not None,
        has_recognized_unit=is_known_unit(quantity.unit),
    )

    return ParsedLineItem(
        name=name,
        normalized_name=normalized,
        quantity_value=quantity.value,
        unit=normalize_unit(quantity.unit),
        raw_line=raw_line,
        confidence=confidence,
        requires_confirmation=requires_confirmation(confidence, low_confidence_threshold),
    )


def parse_receipt_text(text: str, **kwargs: Any) -> List[ParsedLineItem]:
    items: List[ParsedLineItem] = []
    for raw_line in re.split(r"\r?\n", text or ""):
        item = parse_receipt_line(raw_line, **kwargs)
        if item is not None:
            items.append(item)
    return items
