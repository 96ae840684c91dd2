import logging
import sqlite3
from typing import Any, Dict, List, Optional

from services import memory
from services.merge import PantryItem
from services.normalize import normalize_name
from services.quantity import format_quantity, parse_quantity_from_fields

logger = logging.getLogger(__name__)

SEED_ITEMS = [
    {"name": "Rice", "quantity": "2", "unit": "cups"},
    {"name": "Chickpeas", "quantity": "1", "unit": "can"},
    {"name": "Tomatoes", "quantity": "4"},
    {"name": "Olive oil", "quantity": "2", "unit": "tbsp"},
    {"name": "Onion", "quantity": "1"},
]


def _get_conn() -> sqlite3.Connection:
    return memory.get_conn()


def _insert_item(con: sqlite3.Connection, name: str, quantity: Optional[str], unit: Optional[str]) -> int:
    parsed = parse_quantity_from_fields(quantity, unit)
    quantity_value = parsed["quantity_value"]
    display = format_quantity(quantity_value) if quantity_value is not None else (quantity or "").strip() or None
    cur = con.execute(
        """
        INSERT INTO pantry_items (name, normalized_name, quantity, quantity_value, unit)
        VALUES (?, ?, ?, ?, ?)
        """,
        (name.strip(), normalize_name(name), display, quantity_value, parsed["unit"]),
    )
    return int(cur.lastrowid)


def create_pantry_item(name: str, quantity: Optional[str] = None, unit: Optional[str] = None) -> Dict[str, Any]:
    """Add a manually entered pantry item; quantity and unit are free text."""
    if not normalize_name(name):
        raise ValueError("Pantry item name is required.")
    con = _get_conn()
    try:
        item_id = _insert_item(con, name, quantity, unit)
        con.commit()
        row = con.execute("SELECT * FROM pantry_items WHERE id = ?", (item_id,)).fetchone()
        return dict(row)
    finally:
        con.close()


def list_pantry_items() -> List[dict]:
    """Pantry items, newest first, for display."""
    con = _get_conn()
    try:
        cur = con.execute("SELECT * FROM pantry_items ORDER BY created_at DESC, id DESC")
        return [dict(row) for row in cur.fetchall()]
    finally:
        con.close()


def read_snapshot(con: sqlite3.Connection) -> List[PantryItem]:
    cur = con.execute("SELECT * FROM pantry_items ORDER BY created_at ASC, id ASC")
    return [PantryItem.from_row(dict(row)) for row in cur.fetchall()]


def get_pantry_snapshot() -> List[PantryItem]:
    """Pantry items in creation order, the order merge tie-breaks rely on."""
    con = _get_conn()
    try:
        return read_snapshot(con)
    finally:
        con.close()


def delete_pantry_item(item_id: int) -> bool:
    con = _get_conn()
    try:
        cur = con.execute("DELETE FROM pantry_items WHERE id = ?", (item_id,))
        con.commit()
        return cur.rowcount > 0
    finally:
        con.close()


def seed_pantry_items() -> int:
    """Replace the pantry with a small sample set."""
    con = _get_conn()
    try:
        con.execute("DELETE FROM pantry_items")
        for sample in SEED_ITEMS:
            _insert_item(con, sample["name"], sample.get("quantity"), sample.get("unit"))
        con.commit()
        logger.info("Seeded pantry with %d items", len(SEED_ITEMS))
        return len(SEED_ITEMS)
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()
