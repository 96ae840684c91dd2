"""Command-line entry point.

Usage:
    pantry-pilot import-receipt receipt.jpg        # OCR, parse and store a receipt
    pantry-pilot apply 3 reviewed.json             # Merge reviewed rows into the pantry
    pantry-pilot pantry list|add|seed
    pantry-pilot generate --max-time 30 --save     # Ask the model for three recipes
    pantry-pilot recipes list|show|delete <id>
    pantry-pilot recipes search "lentil soup"      # Find recipe pages on the web
    pantry-pilot recipes import <url> --save       # Read a recipe from a web page
    pantry-pilot check-llm                         # Verify the API key against the provider
    pantry-pilot --show-metrics apply 3 rows.json  # Append a metrics summary on stderr
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from pydantic import ValidationError

from pantry_pilot.config import load_config
from pantry_pilot.logging import configure_logging
from services import memory, pantry, receipts, recipes
from services.metrics import format_metrics
from services.llm_client import LlmClient, LlmConfigurationError, LlmRequestError
from services.recipe_generation import GenerateRecipeRequest, generate_recipes, prompt_snapshot, provider_error_message
from services.recipe_web import RecipeWebClient, RecipeWebError, UrlNotAllowedError, import_recipe_from_url
from services.text_source import UnsupportedMimeTypeError

logger = logging.getLogger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _optional_client(config: dict) -> Optional[LlmClient]:
    try:
        return LlmClient.from_config(config)
    except LlmConfigurationError:
        return None


def _cmd_import_receipt(args: argparse.Namespace, config: dict) -> int:
    try:
        receipt = receipts.import_receipt_file(
            args.file,
            mime_type=args.mime_type,
            client=_optional_client(config),
        )
    except (FileNotFoundError, UnsupportedMimeTypeError, receipts.ReceiptImportError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    _print_json(receipt)
    return 0


def _cmd_apply(args: argparse.Namespace, config: dict) -> int:
    rows_path = Path(args.rows)
    try:
        rows = json.loads(rows_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"Error: could not read reviewed rows from {rows_path}: {exc}", file=sys.stderr)
        return 1
    if isinstance(rows, dict):
        rows = rows.get("items") or rows.get("line_items") or []
    if not isinstance(rows, list):
        print("Error: reviewed rows must be a JSON list.", file=sys.stderr)
        return 1

    try:
        if args.dry_run:
            _print_json(receipts.preview_receipt_items(args.receipt_id, rows))
            return 0
        result = receipts.apply_receipt_items(args.receipt_id, rows)
    except receipts.ReceiptNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    _print_json(result)
    return 0


def _cmd_pantry(args: argparse.Namespace, config: dict) -> int:
    if args.pantry_command == "list":
        items = pantry.list_pantry_items()
        if not items:
            print("Pantry is empty.")
            return 0
        for item in items:
            amount = " ".join(part for part in (item.get("quantity"), item.get("unit")) if part)
            print(f"  [{item['id']}] {item['name']}" + (f" ({amount})" if amount else ""))
        return 0

    if args.pantry_command == "add":
        try:
            item = pantry.create_pantry_item(args.name, args.quantity, args.unit)
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        _print_json(item)
        return 0

    if args.pantry_command == "delete":
        if not pantry.delete_pantry_item(args.item_id):
            print(f"Error: pantry item {args.item_id} not found.", file=sys.stderr)
            return 1
        return 0

    count = pantry.seed_pantry_items()
    print(f"Seeded {count} pantry items.")
    return 0


def _cmd_generate(args: argparse.Namespace, config: dict) -> int:
    try:
        constraints = GenerateRecipeRequest(
            max_time=args.max_time,
            cuisine=args.cuisine,
            dietary_notes=args.diet,
        )
    except ValidationError as exc:
        print(f"Error: invalid constraints: {exc}", file=sys.stderr)
        return 1

    client = _optional_client(config)
    if client is None:
        print("Error: LLM_API_KEY is required", file=sys.stderr)
        return 1

    items = pantry.list_pantry_items()
    result = generate_recipes(client, items, constraints)
    if result.ok and args.save:
        snapshot = prompt_snapshot(items, constraints)
        saved = [recipes.save_recipe(recipe, prompt_json=snapshot) for recipe in result.recipes]
        logger.info("Saved %d generated recipes", len(saved))
    _print_json(result.to_dict())
    return 0 if result.ok else 1


def _import_recipe(args: argparse.Namespace, config: dict) -> int:
    try:
        result = import_recipe_from_url(
            args.url,
            _optional_client(config),
            web=RecipeWebClient.from_config(config),
        )
    except (UrlNotAllowedError, RecipeWebError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except LlmRequestError as exc:
        print(f"Error: {provider_error_message(exc)}", file=sys.stderr)
        return 1

    data = result.to_dict()
    if args.save:
        data["id"] = recipes.save_recipe(result.recipe, prompt_json=json.dumps({"source": data["source"]}))
    _print_json(data)
    return 0


def _cmd_recipes(args: argparse.Namespace, config: dict) -> int:
    if args.recipes_command == "show":
        recipe = recipes.get_recipe(args.recipe_id)
        if recipe is None:
            print(f"Error: recipe {args.recipe_id} not found.", file=sys.stderr)
            return 1
        _print_json(recipe)
        return 0

    if args.recipes_command == "delete":
        if not recipes.delete_recipe(args.recipe_id):
            print(f"Error: recipe {args.recipe_id} not found.", file=sys.stderr)
            return 1
        return 0

    if args.recipes_command == "search":
        try:
            results = RecipeWebClient.from_config(config).search(args.query)
        except (ValueError, RecipeWebError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        _print_json({"query": args.query, "results": results})
        return 0

    if args.recipes_command == "import":
        return _import_recipe(args, config)

    for recipe in recipes.list_recipes():
        print(f"  [{recipe['id']}] {recipe['title']}")
    return 0


def _cmd_check_llm(args: argparse.Namespace, config: dict) -> int:
    client = _optional_client(config)
    if client is None:
        print("LLM_API_KEY is not set.")
        return 1
    status = client.smoke_check_auth()
    if status is None:
        print(f"Could not reach {client.settings.base_url}.")
        return 1
    print(f"{client.settings.base_url}/models -> HTTP {status}")
    return 0 if status < 400 else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pantry-pilot", description="Pantry tracking and recipe ideas")
    parser.add_argument("--show-metrics", action="store_true", help="Print collected metrics to stderr on exit")
    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import-receipt", help="OCR a receipt image or PDF and store its rows")
    p_import.add_argument("file", help="Receipt image (jpg/png/webp) or PDF")
    p_import.add_argument("--mime-type", help="Override the guessed MIME type")
    p_import.set_defaults(handler=_cmd_import_receipt)

    p_apply = sub.add_parser("apply", help="Merge reviewed receipt rows into the pantry")
    p_apply.add_argument("receipt_id", type=int)
    p_apply.add_argument("rows", metavar="ROWS_JSON", help="JSON file with the reviewed rows")
    p_apply.add_argument("--dry-run", action="store_true", help="Show the planned merges without applying them")
    p_apply.set_defaults(handler=_cmd_apply)

    p_pantry = sub.add_parser("pantry", help="Manage pantry items")
    pantry_sub = p_pantry.add_subparsers(dest="pantry_command", required=True)
    pantry_sub.add_parser("list", help="List pantry items")
    p_add = pantry_sub.add_parser("add", help="Add a pantry item")
    p_add.add_argument("name")
    p_add.add_argument("quantity", nargs="?")
    p_add.add_argument("unit", nargs="?")
    p_delete = pantry_sub.add_parser("delete", help="Delete a pantry item")
    p_delete.add_argument("item_id", type=int)
    pantry_sub.add_parser("seed", help="Replace the pantry with sample items")
    p_pantry.set_defaults(handler=_cmd_pantry)

    p_generate = sub.add_parser("generate", help="Generate three recipes from the pantry")
    p_generate.add_argument("--max-time", type=int, help="Maximum cooking time in minutes")
    p_generate.add_argument("--cuisine")
    p_generate.add_argument("--diet", help="Dietary notes")
    p_generate.add_argument("--save", action="store_true", help="Save the generated recipes")
    p_generate.set_defaults(handler=_cmd_generate)

    p_recipes = sub.add_parser("recipes", help="Manage saved recipes and import new ones")
    recipes_sub = p_recipes.add_subparsers(dest="recipes_command", required=True)
    recipes_sub.add_parser("list", help="List saved recipes")
    p_show = recipes_sub.add_parser("show", help="Show one saved recipe")
    p_show.add_argument("recipe_id", type=int)
    p_remove = recipes_sub.add_parser("delete", help="Delete a saved recipe")
    p_remove.add_argument("recipe_id", type=int)
    p_search = recipes_sub.add_parser("search", help="Search the web for recipe pages")
    p_search.add_argument("query")
    p_fetch = recipes_sub.add_parser("import", help="Import a recipe from a web page")
    p_fetch.add_argument("url")
    p_fetch.add_argument("--save", action="store_true", help="Save the imported recipe")
    p_recipes.set_defaults(handler=_cmd_recipes)

    p_check = sub.add_parser("check-llm", help="Check the LLM API key against the provider")
    p_check.set_defaults(handler=_cmd_check_llm)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    configure_logging(config)
    memory.init_db()
    try:
        return args.handler(args, config)
    finally:
        if args.show_metrics:
            print(format_metrics(), file=sys.stderr)


if __name__ == "__main__":
    sys.exit(main())
