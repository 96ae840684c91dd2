"""Find recipes on the web and import one from its page.

Pages are fetched with requests and read with BeautifulSoup. A schema.org
Recipe in the page's JSON-LD is taken as-is; otherwise the visible page
text is handed to the model.
"""
import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

import requests
from bs4 import BeautifulSoup
from pydantic import ValidationError

from pantry_pilot.config import get_web_settings
from pantry_pilot.llm.prompts import RECIPE_IMPORT_SYSTEM_PROMPT
from pantry_pilot.logging import log_event, run_context
from services.llm_client import LlmClient, create_chat_completion_with_fallback
from services.llm_output import Parsed, recover_structured, salvage_recipes_from_freeform
from services.llm_schema import RecipeCandidate

logger = logging.getLogger(__name__)

SEARCH_ENDPOINT = "https://html.duckduckgo.com/html/"
DEFAULT_USER_AGENT = "Mozilla/5.0 PantryPilot/1.0"
MAX_QUERY_LENGTH = 120
MAX_PAGE_TEXT_CHARS = 18000
IMPORT_MAX_ATTEMPTS_PER_MODEL = 2

BLOCKED_HOSTNAMES = {"localhost", "127.0.0.1", "::1"}

EXTRACTION_JSON_LD = "json-ld"
EXTRACTION_LLM = "llm"


class RecipeWebError(RuntimeError):
    """A recipe page or search could not be fetched or read."""


class UrlNotAllowedError(ValueError):
    pass


@dataclass
class RecipeImportResult:
    recipe: RecipeCandidate
    url: str
    page_title: str
    extraction: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipe": self.recipe.model_dump(),
            "source": {"url": self.url, "title": self.page_title, "extraction": self.extraction},
        }


def is_private_hostname(hostname: str) -> bool:
    lower = (hostname or "").strip().lower().strip("[]")
    if not lower or lower in BLOCKED_HOSTNAMES or lower.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(lower)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


def validate_import_url(url: str) -> str:
    candidate = (url or "").strip()
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise UrlNotAllowedError("URL must be an absolute http(s) address.")
    if is_private_hostname(parsed.hostname):
        raise UrlNotAllowedError("URL is not allowed")
    return candidate


def _normalize_result_url(raw_url: str) -> str:
    candidate = (raw_url or "").strip()
    if not candidate:
        return ""
    parsed = urlparse(candidate)
    if "duckduckgo.com" in parsed.netloc and parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg", [""])[0]
        if target:
            return unquote(target)
    return candidate


def _clean_text(text: str) -> str:
    return " ".join((text or "").split())


def parse_search_results(html: str, max_results: int = 8) -> List[Dict[str, str]]:
    soup = BeautifulSoup(html or "", "html.parser")
    results: List[Dict[str, str]] = []
    for anchor in soup.select("a.result__a"):
        url = _normalize_result_url(anchor.get("href", ""))
        title = _clean_text(anchor.get_text(" ", strip=True))
        if not title or not url.startswith(("http://", "https://")):
            continue

        snippet = ""
        parent = anchor.find_parent("div", class_="result")
        if parent:
            snippet_tag = parent.select_one(".result__snippet")
            if snippet_tag:
                snippet = _clean_text(snippet_tag.get_text(" ", strip=True))

        results.append({"title": title, "url": url, "snippet": snippet})
        if len(results) >= max_results:
            break
    return results


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _instructions(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        return []

    steps: List[str] = []
    for step in value:
        if isinstance(step, str) and step.strip():
            steps.append(step.strip())
        elif isinstance(step, dict):
            # HowToSection groups its HowToSteps under itemListElement.
            if isinstance(step.get("itemListElement"), list):
                steps.extend(_instructions(step["itemListElement"]))
            elif isinstance(step.get("text"), str) and step["text"].strip():
                steps.append(step["text"].strip())
    return steps


def _is_recipe_type(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "recipe"
    if isinstance(value, list):
        return any(isinstance(item, str) and item.lower() == "recipe" for item in value)
    return False


def _find_recipe_node(data: Any) -> Optional[Dict[str, Any]]:
    if isinstance(data, list):
        for item in data:
            found = _find_recipe_node(item)
            if found:
                return found
        return None
    if not isinstance(data, dict):
        return None
    if _is_recipe_type(data.get("@type")):
        return data
    if isinstance(data.get("@graph"), list):
        return _find_recipe_node(data["@graph"])
    return None


def extract_recipe_from_json_ld(html: str) -> Optional[RecipeCandidate]:
    """First complete schema.org Recipe found in the page's JSON-LD blocks."""
    soup = BeautifulSoup(html or "", "html.parser")
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        content = (script.string or script.get_text() or "").strip()
        if not content:
            continue
        try:
            node = _find_recipe_node(json.loads(content))
        except ValueError:
            logger.debug("Skipping malformed JSON-LD block")
            continue
        if not node:
            continue

        title = node.get("name").strip() if isinstance(node.get("name"), str) else ""
        ingredients = _strings(node.get("recipeIngredient"))
        steps = _instructions(node.get("recipeInstructions"))
        notes = node.get("description").strip() if isinstance(node.get("description"), str) else ""
        if not title or not ingredients or not steps:
            continue
        try:
            return RecipeCandidate(title=title, ingredients=ingredients, steps=steps, notes=notes)
        except ValidationError:
            continue
    return None


def page_title(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    return _clean_text(soup.title.get_text(" ", strip=True)) if soup.title else ""


def page_text(html: str, max_chars: int = MAX_PAGE_TEXT_CHARS) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return _clean_text(soup.get_text(" ", strip=True))[:max_chars]


class RecipeWebClient:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout_seconds: int = 12,
        max_search_results: int = 8,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_search_results = max_search_results
        self.session = session or requests.Session()
        self.session.headers.update(
            {"User-Agent": DEFAULT_USER_AGENT, "Accept-Language": "en-US,en;q=0.9"}
        )

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "RecipeWebClient":
        settings = get_web_settings(config)
        return cls(
            timeout_seconds=settings["timeout_seconds"],
            max_search_results=settings["max_search_results"],
        )

    def search(self, query: str) -> List[Dict[str, str]]:
        """Search the web for recipes; returns title, url and snippet per hit."""
        q = (query or "").strip()
        if not q:
            raise ValueError("Missing query")
        if len(q) > MAX_QUERY_LENGTH:
            raise ValueError("Query too long")

        try:
            response = self.session.get(
                SEARCH_ENDPOINT,
                params={"q": f"{q} recipe"},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.error("Recipe search failed: %s", exc)
            raise RecipeWebError("Recipe search failed") from exc

        results = parse_search_results(response.text, self.max_search_results)
        logger.info("Recipe search %r returned %d results", q, len(results))
        return results

    def fetch_html(self, url: str) -> str:
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.error("Failed to download recipe page %s: %s", url, exc)
            raise RecipeWebError("Failed to fetch recipe page") from exc

        content_type = response.headers.get("Content-Type", "")
        if "text/html" not in content_type.lower():
            raise RecipeWebError("Recipe URL must return an HTML page")
        return response.text


def _salvage_single_recipe(raw: str) -> Optional[RecipeCandidate]:
    salvaged = salvage_recipes_from_freeform(raw)
    return salvaged.recipes[0] if salvaged else None


def _recipe_from_page_text(client: LlmClient, url: str, title: str, text: str) -> RecipeCandidate:
    user_prompt = "\n\n".join(
        [
            f"Source URL: {url}",
            f"Page title: {title or '(missing)'}",
            "Extract a single clear recipe from this page content:",
            text or "(empty page text)",
        ]
    )
    completion = create_chat_completion_with_fallback(
        client,
        [
            {"role": "system", "content": RECIPE_IMPORT_SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
        temperature=0.0,
        max_attempts_per_model=IMPORT_MAX_ATTEMPTS_PER_MODEL,
    )
    outcome = recover_structured(
        client,
        completion.content,
        RecipeCandidate,
        temperature=0.0,
        system_prompt=RECIPE_IMPORT_SYSTEM_PROMPT,
        salvage=_salvage_single_recipe,
    )
    if not isinstance(outcome, Parsed):
        raise RecipeWebError("Could not parse recipe from the page")
    return outcome.value


def import_recipe_from_url(
    url: str,
    client: Optional[LlmClient] = None,
    *,
    web: Optional[RecipeWebClient] = None,
) -> RecipeImportResult:
    """Read one recipe from a web page.

    Raises UrlNotAllowedError for non-http or private addresses and
    RecipeWebError when the page cannot be fetched or read. LlmRequestError
    from the model propagates.
    """
    target = validate_import_url(url)
    web = web or RecipeWebClient.from_config()

    with run_context():
        html = web.fetch_html(target)
        title = page_title(html)

        recipe = extract_recipe_from_json_ld(html)
        extraction = EXTRACTION_JSON_LD
        if recipe is None:
            if client is None:
                raise RecipeWebError("No structured recipe on the page and no LLM is configured.")
            recipe = _recipe_from_page_text(client, target, title, page_text(html))
            extraction = EXTRACTION_LLM

        log_event(logger, logging.INFO, f"Imported recipe {recipe.title!r}", url=target, extraction=extraction)
        return RecipeImportResult(recipe=recipe, url=target, page_title=title, extraction=extraction)
