import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional, Union

from services import memory
from services.llm_schema import RecipeCandidate

logger = logging.getLogger(__name__)


def _get_conn() -> sqlite3.Connection:
    return memory.get_conn()


def _row_to_recipe(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["ingredients"] = json.loads(data.pop("ingredients_json") or "[]")
    data["steps"] = json.loads(data.pop("steps_json") or "[]")
    prompt_json = data.pop("prompt_json", None)
    data["prompt"] = json.loads(prompt_json) if prompt_json else None
    return data


def save_recipe(recipe: Union[RecipeCandidate, Dict[str, Any]], prompt_json: Optional[str] = None) -> int:
    """
    Persist a generated recipe.
    recipe: RecipeCandidate or {title, ingredients, steps, notes}
    prompt_json: what the recipe was generated from, as produced by prompt_snapshot
    """
    candidate = recipe if isinstance(recipe, RecipeCandidate) else RecipeCandidate.model_validate(recipe)
    con = _get_conn()
    try:
        cur = con.execute(
            """
            INSERT INTO recipes (title, ingredients_json, steps_json, notes, prompt_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                candidate.title,
                json.dumps(candidate.ingredients),
                json.dumps(candidate.steps),
                candidate.notes or "",
                prompt_json,
            ),
        )
        con.commit()
        recipe_id = int(cur.lastrowid)
        logger.info("Saved recipe %s: %s", recipe_id, candidate.title)
        return recipe_id
    finally:
        con.close()


def list_recipes() -> List[Dict[str, Any]]:
    con = _get_conn()
    try:
        cur = con.execute("SELECT * FROM recipes ORDER BY created_at DESC, id DESC")
        return [_row_to_recipe(row) for row in cur.fetchall()]
    finally:
        con.close()


def get_recipe(recipe_id: int) -> Optional[Dict[str, Any]]:
    con = _get_conn()
    try:
        row = con.execute("SELECT * FROM recipes WHERE id = ?", (recipe_id,)).fetchone()
        return _row_to_recipe(row) if row else None
    finally:
        con.close()


def delete_recipe(recipe_id: int) -> bool:
    con = _get_conn()
    try:
        cur = con.execute("DELETE FROM recipes WHERE id = ?", (recipe_id,))
        con.commit()
        deleted = cur.rowcount > 0
    finally:
        con.close()
    if deleted:
        logger.info("Deleted recipe %s", recipe_id)
    return deleted
