import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from pantry_pilot.llm.prompts import RECIPE_SYSTEM_PROMPT
from pantry_pilot.logging import run_context
from services.llm_client import LlmClient, LlmRequestError, create_chat_completion_with_fallback
from services.llm_output import Parsed, recover_structured, salvage_recipes_from_freeform
from services.llm_schema import RecipeCandidate, RecipeResponse

logger = logging.getLogger(__name__)

LLM_PARSE_ERROR = "LLM_PARSE_ERROR"
LLM_EMPTY_RESPONSE = "LLM_EMPTY_RESPONSE"
LLM_REQUEST_FAILED = "LLM_REQUEST_FAILED"

GENERATION_TEMPERATURE = 0.2


class GenerateRecipeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    max_time: Optional[int] = Field(default=None, gt=0, le=360, alias="maxTime")
    cuisine: Optional[str] = Field(default=None, max_length=100)
    dietary_notes: Optional[str] = Field(default=None, max_length=400, alias="dietaryNotes")


@dataclass
class GenerateRecipesResult:
    ok: bool
    raw: str = ""
    recipes: List[RecipeCandidate] = field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "recipes": [r.model_dump() for r in self.recipes], "raw": self.raw}
        return {
            "ok": False,
            "error": {"code": self.error_code, "message": self.error_message},
            "raw": self.raw,
        }


def _field(item: Any, key: str) -> Any:
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, key, None)


def build_recipe_prompt_context(
    pantry_items: Sequence[Any],
    constraints: GenerateRecipeRequest,
) -> str:
    lines = []
    for item in pantry_items:
        qty = str(_field(item, "quantity") or "").strip()
        unit = str(_field(item, "unit") or "").strip()
        name = str(_field(item, "name") or "").strip()
        parts = [part for part in (qty, unit, name) if part]
        lines.append(f"- {' '.join(parts)}".strip())
    pantry_text = "\n".join(lines) or "- No pantry items provided."

    return "\n".join(
        [
            f"Pantry items:\n{pantry_text}",
            "Constraints:",
            f"- Max time: {f'{constraints.max_time} minutes' if constraints.max_time else 'not set'}",
            f"- Cuisine: {constraints.cuisine or 'not set'}",
            f"- Dietary notes: {constraints.dietary_notes or 'not set'}",
        ]
    )


def provider_error_message(error: Exception) -> str:
    status = getattr(error, "status", None)
    message = str(getattr(error, "message", "") or "")

    if status == 401:
        return "LLM authentication failed (401). Check LLM_API_KEY and provider token permissions."
    if status == 403:
        return "LLM access denied (403). Verify token scope and model access."
    if status == 404:
        return "LLM model/provider endpoint not found (404). Check LLM_MODEL and LLM_BASE_URL."
    if status:
        return f"LLM provider request failed ({status})" + (f": {message}" if message else ".")
    return message or "Failed to call LLM provider."


def _request_raw_recipes(client: LlmClient, prompt: str) -> str:
    completion = create_chat_completion_with_fallback(
        client,
        [
            {"role": "system", "content": RECIPE_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        temperature=GENERATION_TEMPERATURE,
    )
    logger.info("Recipe generation answered by model=%s", completion.model)
    return completion.content


def generate_recipes(
    client: LlmClient,
    pantry_items: Sequence[Any],
    constraints: Optional[GenerateRecipeRequest] = None,
) -> GenerateRecipesResult:
    """Ask the model for three recipes built from the pantry.

    Never raises for provider or parse failures; the result carries an
    error code and a human-readable message instead.
    """
    constraints = constraints or GenerateRecipeRequest()
    prompt = build_recipe_prompt_context(pantry_items, constraints)
    raw = ""

    with run_context():
        try:
            raw = _request_raw_recipes(client, prompt)
            if not raw.strip():
                return GenerateRecipesResult(
                    ok=False,
                    raw=raw,
                    error_code=LLM_EMPTY_RESPONSE,
                    error_message="Model returned an empty response.",
                )

            outcome = recover_structured(
                client,
                raw,
                RecipeResponse,
                temperature=GENERATION_TEMPERATURE,
                system_prompt=RECIPE_SYSTEM_PROMPT,
                salvage=salvage_recipes_from_freeform,
            )
        except LlmRequestError as exc:
            logger.error("LLM request failed: %s", exc)
            return GenerateRecipesResult(
                ok=False,
                raw=raw,
                error_code=LLM_REQUEST_FAILED,
                error_message=provider_error_message(exc),
            )

    if isinstance(outcome, Parsed):
        return GenerateRecipesResult(ok=True, raw=outcome.raw, recipes=list(outcome.value.recipes))

    return GenerateRecipesResult(
        ok=False,
        raw=outcome.raw,
        error_code=LLM_PARSE_ERROR,
        error_message="Model output was not valid JSON after retry.",
    )


def prompt_snapshot(pantry_items: Sequence[Any], constraints: GenerateRecipeRequest) -> str:
    """JSON record of what a saved recipe was generated from."""
    return json.dumps(
        {
            "pantry": [
                {key: _field(item, key) for key in ("name", "quantity", "unit")} for item in pantry_items
            ],
            "constraints": constraints.model_dump(),
        }
    )
