"""Turn raw model output into validated structures.

The recovery pipeline is explicit: ``parse_structured`` yields ``Parsed`` or
``NeedsRepair``; ``recover_structured`` adds one repair round-trip and an
optional freeform salvage step, ending in ``Parsed`` or ``Unparseable``.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from services.llm_client import LlmClient, create_chat_completion_with_fallback
from services.llm_schema import RecipeCandidate, RecipeResponse

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

THINKING_BLOCK_RE = re.compile(r"<(think|thinking|reasoning)>[\s\S]*?</\1>", re.IGNORECASE)
THINKING_CLOSE_RE = re.compile(r"</(?:think|thinking|reasoning)>", re.IGNORECASE)
FENCED_BLOCK_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)

RECIPE_HEADER_RE = re.compile(
    r"^\s*(?:#+\s*)?(?:\*\*)?\s*recipe\s*(\d+)\s*[:.)\-]\s*(.+?)\s*(?:\*\*)?\s*$",
    re.IGNORECASE,
)
SECTION_RE = re.compile(
    r"^\s*(?:#+\s*)?(?:\*\*)?\s*(ingredients|steps|instructions|directions|method)\s*:?\s*(?:\*\*)?\s*:?\s*$",
    re.IGNORECASE,
)
NOTES_RE = re.compile(r"^\s*(?:\*\*)?\s*notes?\s*:\s*(?:\*\*)?\s*(.*)$", re.IGNORECASE)
BULLET_RE = re.compile(r"^\s*[-*•]\s+(.+?)\s*$")
NUMBERED_RE = re.compile(r"^\s*(?:step\s*)?\d+\s*[.):]\s*(.+?)\s*$", re.IGNORECASE)

MAX_SALVAGED_RECIPES = 3

REPAIR_PROMPT = "Fix this JSON so it is valid and matches the schema exactly.\nReturn only corrected JSON."


@dataclass
class Parsed(Generic[M]):
    value: M
    raw: str
    stage: str = "json"


@dataclass
class NeedsRepair:
    raw: str
    error: str


@dataclass
class Unparseable:
    raw: str
    error: str


ParseOutcome = Union[Parsed, NeedsRepair]
RecoveryOutcome = Union[Parsed, Unparseable]


class LlmOutputError(ValueError):
    """Model output could not be parsed even after repair and salvage."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


def strip_thinking(raw: str) -> str:
    text = THINKING_BLOCK_RE.sub("", raw or "")
    # An unmatched closing tag means the opening tag was cut off upstream.
    closing = list(THINKING_CLOSE_RE.finditer(text))
    if closing:
        text = text[closing[-1].end():]
    return text.strip()


def extract_json_block(raw: str) -> str:
    trimmed = (raw or "").strip()
    if trimmed.startswith("```"):
        match = FENCED_BLOCK_RE.match(trimmed)
        if match and match.group(1):
            return match.group(1)
    return trimmed


def parse_structured(raw: str, model: Type[M]) -> ParseOutcome:
    candidate = extract_json_block(strip_thinking(raw))
    try:
        data = json.loads(candidate)
    except (TypeError, ValueError) as exc:
        return NeedsRepair(raw=raw, error=f"invalid JSON: {exc}")
    try:
        return Parsed(value=model.model_validate(data), raw=raw)
    except ValidationError as exc:
        return NeedsRepair(raw=raw, error=f"schema mismatch: {exc.error_count()} error(s)")


def _recipe_or_none(record: Dict[str, Any]) -> Optional[RecipeCandidate]:
    if not record.get("title") or not record.get("ingredients") or not record.get("steps"):
        return None
    try:
        return RecipeCandidate.model_validate(record)
    except ValidationError:
        return None


def salvage_recipes_from_freeform(raw: str) -> Optional[RecipeResponse]:
    """Best-effort recipe extraction from plain text.

    Recognizes ``Recipe N: <title>`` headers followed by ``Ingredients:``
    (bulleted) and ``Steps:`` (numbered or bulleted) sections and an
    optional ``Notes:`` line. Lines before the first header are ignored.
    """
    recipes: List[RecipeCandidate] = []
    current: Optional[Dict[str, Any]] = None
    section: Optional[str] = None

    def _close() -> None:
        if current is not None:
            recipe = _recipe_or_none(current)
            if recipe is not None:
                recipes.append(recipe)

    for line in strip_thinking(raw).splitlines():
        if not line.strip():
            continue

        header = RECIPE_HEADER_RE.match(line)
        if header:
            _close()
            current = {"title": header.group(2).strip(), "ingredients": [], "steps": [], "notes": ""}
            section = None
            continue

        if current is None:
            continue

        section_match = SECTION_RE.match(line)
        if section_match:
            section = "ingredients" if section_match.group(1).lower() == "ingredients" else "steps"
            continue

        notes = NOTES_RE.match(line)
        if notes:
            current["notes"] = notes.group(1).strip()
            section = None
            continue

        bullet = BULLET_RE.match(line)
        numbered = NUMBERED_RE.match(line)
        if section == "ingredients" and bullet:
            current["ingredients"].append(bullet.group(1))
        elif section == "steps" and (numbered or bullet):
            current["steps"].append((numbered or bullet).group(1))

    _close()

    if not recipes:
        return None
    return RecipeResponse(recipes=recipes[:MAX_SALVAGED_RECIPES])


def recover_structured(
    client: LlmClient,
    raw: str,
    model: Type[M],
    *,
    temperature: float = 0.0,
    system_prompt: Optional[str] = None,
    salvage: Optional[Callable[[str], Optional[M]]] = None,
) -> RecoveryOutcome:
    """Parse, then repair once, then salvage; stop at the first success."""
    first = parse_structured(raw, model)
    if isinstance(first, Parsed):
        return first

    logger.warning("LLM output needs repair: %s", first.error)
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": f"{REPAIR_PROMPT}\n\n{raw}"})
    repaired = create_chat_completion_with_fallback(client, messages, temperature=temperature)
    candidate_raw = repaired.content or raw

    second = parse_structured(candidate_raw, model)
    if isinstance(second, Parsed):
        second.stage = "repair"
        return second

    if salvage is not None:
        salvaged = salvage(candidate_raw)
        if salvaged is None and candidate_raw != raw:
            salvaged = salvage(raw)
        if salvaged is not None:
            logger.warning("LLM returned freeform output; salvaged structured data from text blocks.")
            return Parsed(value=salvaged, raw=candidate_raw, stage="salvage")

    logger.error("LLM parse failure after repair: %s", second.error)
    return Unparseable(raw=candidate_raw, error=second.error)
