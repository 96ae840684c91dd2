import sqlite3
from pathlib import Path

from pantry_pilot.config import get_db_path as _configured_db_path

DB_PATH = _configured_db_path()


def get_db_path() -> Path:
    return DB_PATH


def get_conn() -> sqlite3.Connection:
    """Get a database connection."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(DB_PATH)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL;")
    con.execute("PRAGMA foreign_keys=ON;")
    return con


def init_db() -> None:
    con = get_conn()
    try:
        cur = con.cursor()

        cur.execute("""
        CREATE TABLE IF NOT EXISTS pantry_items (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            normalized_name TEXT NOT NULL,
            quantity TEXT,
            quantity_value REAL,
            unit TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
        """)
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_pantry_items_normalized ON pantry_items(normalized_name);"
        )

        cur.execute("""
        CREATE TABLE IF NOT EXISTS receipts (
            id INTEGER PRIMARY KEY,
            file_path TEXT,
            mime_type TEXT,
            original_name TEXT,
            ocr_text TEXT NOT NULL DEFAULT '',
            ocr_confidence REAL,
            status TEXT CHECK(status IN ('pending','applied')) NOT NULL DEFAULT 'pending',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            applied_at TEXT
        );
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS receipt_line_items (
            id INTEGER PRIMARY KEY,
            receipt_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            normalized_name TEXT NOT NULL,
            quantity_value REAL,
            unit TEXT,
            raw_line TEXT NOT NULL,
            confidence REAL,
            confirmed INTEGER NOT NULL DEFAULT 0,
            ignored INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY(receipt_id) REFERENCES receipts(id) ON DELETE CASCADE
        );
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS recipes (
            id INTEGER PRIMARY KEY,
            title TEXT NOT NULL,
            ingredients_json TEXT NOT NULL,
            steps_json TEXT NOT NULL,
            notes TEXT DEFAULT '',
            prompt_json TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
        """)

        con.commit()
    finally:
        con.close()
