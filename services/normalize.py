import re
from typing import Dict, Optional

UNIT_ALIASES: Dict[str, str] = {
    # mass
    "mg": "mg",
    "milligram": "mg",
    "milligrams": "mg",
    "g": "g",
    "gr": "g",
    "gram": "g",
    "grams": "g",
    "kg": "kg",
    "kilo": "kg",
    "kilos": "kg",
    "kilogram": "kg",
    "kilograms": "kg",
    "oz": "oz",
    "ounce": "oz",
    "ounces": "oz",
    "lb": "lb",
    "lbs": "lb",
    "pound": "lb",
    "pounds": "lb",
    # volume
    "ml": "ml",
    "milliliter": "ml",
    "milliliters": "ml",
    "millilitre": "ml",
    "millilitres": "ml",
    "l": "l",
    "liter": "l",
    "liters": "l",
    "litre": "l",
    "litres": "l",
    "floz": "floz",
    "cup": "cup",
    "cups": "cup",
    "tbsp": "tbsp",
    "tbs": "tbsp",
    "tablespoon": "tbsp",
    "tablespoons": "tbsp",
    "tsp": "tsp",
    "teaspoon": "tsp",
    "teaspoons": "tsp",
    "pt": "pint",
    "pint": "pint",
    "pints": "pint",
    "qt": "quart",
    "quart": "quart",
    "quarts": "quart",
    "gal": "gallon",
    "gallon": "gallon",
    "gallons": "gallon",
    # count
    "pc": "pc",
    "pcs": "pc",
    "piece": "pc",
    "pieces": "pc",
    "ea": "pc",
    "each": "pc",
    "ct": "ct",
    "count": "ct",
    "can": "can",
    "cans": "can",
    "bag": "bag",
    "bags": "bag",
    "box": "box",
    "boxes": "box",
    "bunch": "bunch",
    "bunches": "bunch",
    "dozen": "dozen",
    "doz": "dozen",
    "pack": "pack",
    "pk": "pack",
    "packs": "pack",
    "jar": "jar",
    "jars": "jar",
    "bottle": "bottle",
    "bottles": "bottle",
}

KNOWN_UNITS = frozenset(UNIT_ALIASES.values())

NAME_CLEAN_RE = re.compile(r"[^a-z0-9\s-]")
UNIT_CLEAN_RE = re.compile(r"[^a-z]")
ES_PLURAL_SUFFIXES = ("ches", "shes", "xes")
# "tomatoes" -> "tomato", but "shoes" and "sloes" only lose the "s".
OES_MIN_LENGTH = 6


def singularize_token(token: str) -> str:
    if len(token) <= 3:
        return token
    if token.endswith("ies"):
        return f"{token[:-3]}y"
    if token.endswith(ES_PLURAL_SUFFIXES) or (token.endswith("oes") and len(token) >= OES_MIN_LENGTH):
        return token[:-2]
    if token.endswith("ses"):
        return token[:-1]
    if token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def normalize_name(name: Optional[str]) -> str:
    compact = NAME_CLEAN_RE.sub(" ", str(name or "").lower())
    return " ".join(singularize_token(token) for token in compact.split())


def normalize_unit(unit: Optional[str]) -> Optional[str]:
    """Map a unit alias to its canonical symbol.

    Unknown tokens are kept as-is so user-defined units ("sprig", "head")
    still compare equal to themselves.
    """
    if not unit:
        return None
    compact = UNIT_CLEAN_RE.sub("", str(unit).lower())
    if not compact:
        return None
    return UNIT_ALIASES.get(compact, compact)


def is_known_unit(unit: Optional[str]) -> bool:
    normalized = normalize_unit(unit)
    return normalized is not None and normalized in KNOWN_UNITS


def are_units_compatible(a: Optional[str], b: Optional[str]) -> bool:
    unit_a = normalize_unit(a)
    unit_b = normalize_unit(b)
    if unit_a is None and unit_b is None:
        return True
    return unit_a == unit_b
