from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "config.yaml"

DEFAULT_LLM_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_LLM_MODEL = "openrouter/free"
DEFAULT_LLM_FALLBACK_MODELS = [
    "openai/gpt-oss-20b:free",
    "mistralai/mistral-small-3.1-24b-instruct:free",
    "qwen/qwen3-coder:free",
]

DEFAULTS: Dict[str, Any] = {
    "memory": {"db_path": "data/pantry.db"},
    "paths": {"log_file": "logs/pantry-pilot.log", "uploads_dir": "data/uploads/receipts"},
    "logging": {"level": "INFO", "json_format": False},
    "llm": {
        "base_url": DEFAULT_LLM_BASE_URL,
        "model": DEFAULT_LLM_MODEL,
        "fallback_models": list(DEFAULT_LLM_FALLBACK_MODELS),
        "max_attempts_per_model": 2,
        "timeout_seconds": 120,
    },
    "receipts": {
        "low_confidence_threshold": 0.7,
        "ocr_escalation_confidence": 0.55,
    },
    "web": {"timeout_seconds": 12, "max_search_results": 8},
}

BEARER_PREFIX_RE = re.compile(r"^Bearer\s+", re.IGNORECASE)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def normalize_api_key(value: Optional[str]) -> str:
    return BEARER_PREFIX_RE.sub("", (value or "").strip())


def split_model_list(value: str) -> List[str]:
    return [token.strip() for token in (value or "").split(",") if token.strip()]


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    db_path = os.getenv("PANTRY_PILOT_DB_PATH")
    if db_path:
        overrides.setdefault("memory", {})["db_path"] = db_path

    llm: Dict[str, Any] = {}
    api_key = normalize_api_key(os.getenv("LLM_API_KEY"))
    if api_key:
        llm["api_key"] = api_key

    base_url = (os.getenv("LLM_BASE_URL") or "").strip()
    if base_url:
        llm["base_url"] = base_url

    model = (os.getenv("LLM_MODEL") or "").strip()
    if model:
        llm["model"] = model

    fallbacks = split_model_list(os.getenv("LLM_FALLBACK_MODELS", ""))
    if fallbacks:
        llm["fallback_models"] = fallbacks

    referer = (os.getenv("LLM_HTTP_REFERER") or "").strip()
    if referer:
        llm["http_referer"] = referer

    title = (os.getenv("LLM_X_TITLE") or "").strip()
    if title:
        llm["x_title"] = title

    if llm:
        overrides["llm"] = llm
    return overrides


def resolve_path(path_value: str, *, base_dir: Optional[Path] = None) -> Path:
    candidate = Path(path_value)
    if not candidate.is_absolute():
        candidate = (base_dir or BASE_DIR) / candidate
    return candidate.resolve()


@lru_cache(maxsize=1)
def load_config() -> Dict[str, Any]:
    # Load .env once through a single interface.
    load_dotenv(dotenv_path=BASE_DIR / ".env")

    config_path = os.getenv("PANTRY_PILOT_CONFIG")
    path = resolve_path(config_path, base_dir=Path.cwd()) if config_path else DEFAULT_CONFIG_PATH

    data: Dict[str, Any] = {}
    if path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            data = loaded

    return _deep_merge(_deep_merge(DEFAULTS, data), _env_overrides())


def reload_config() -> Dict[str, Any]:
    load_config.cache_clear()
    return load_config()


def get_db_path(config: Optional[Dict[str, Any]] = None) -> Path:
    cfg = config or load_config()
    db_path = str(cfg.get("memory", {}).get("db_path", "data/pantry.db"))
    return resolve_path(db_path)


def get_log_path(config: Optional[Dict[str, Any]] = None) -> Path:
    cfg = config or load_config()
    log_path = str(cfg.get("paths", {}).get("log_file", "logs/pantry-pilot.log"))
    return resolve_path(log_path)


def get_uploads_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    cfg = config or load_config()
    uploads = str(cfg.get("paths", {}).get("uploads_dir", "data/uploads/receipts"))
    return resolve_path(uploads)


def get_receipt_settings(config: Optional[Dict[str, Any]] = None) -> Dict[str, float]:
    cfg = config or load_config()
    receipts_cfg = cfg.get("receipts", {}) if isinstance(cfg.get("receipts"), dict) else {}
    return {
        "low_confidence_threshold": float(receipts_cfg.get("low_confidence_threshold", 0.7)),
        "ocr_escalation_confidence": float(receipts_cfg.get("ocr_escalation_confidence", 0.55)),
    }


def get_web_settings(config: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
    cfg = config or load_config()
    web_cfg = cfg.get("web", {}) if isinstance(cfg.get("web"), dict) else {}
    return {
        "timeout_seconds": int(web_cfg.get("timeout_seconds", 12)),
        "max_search_results": int(web_cfg.get("max_search_results", 8)),
    }
