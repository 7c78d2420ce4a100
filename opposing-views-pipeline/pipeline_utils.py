"""Shared helpers for the opposing views pipeline."""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import orjson


logger = logging.getLogger(__name__)

PROMPT_DIR = Path(__file__).parent / "prompts"
SCHEMA_SQL_PATH = Path(__file__).with_name("schema.sql")
JSON_ONLY_FOOTER = (
    "\n\nFollow the schema exactly and return ONLY the JSON payload. "
    "Do not repeat the schema, include explanations, or add any extra text."
)


def ensure_dir(path: Path) -> None:
    """Create directories as needed."""
    path.mkdir(parents=True, exist_ok=True)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def prompt_path(key: str) -> Path:
    return PROMPT_DIR / f"{key}.prompt"


def schema_path(key: str) -> Path:
    return PROMPT_DIR / f"{key}.output.json"


@lru_cache(maxsize=None)
def load_prompt_template(key: str) -> str:
    return prompt_path(key).read_text(encoding="utf-8")


def render_prompt(template: str, variables: Dict[str, Any]) -> str:
    pattern = re.compile(r"\{\{\s*(\w+)\s*\}\}")
    prompt = pattern.sub(lambda match: str(variables.get(match.group(1), "")), template)
    lower_prompt = prompt.lower()
    if "return only" not in lower_prompt and "output only" not in lower_prompt:
        prompt = prompt.rstrip() + JSON_ONLY_FOOTER
    return prompt


@lru_cache(maxsize=None)
def load_schema(key: str) -> Dict[str, Any]:
    return orjson.loads(schema_path(key).read_bytes())


def schema_text(key: str) -> str:
    return orjson.dumps(load_schema(key), option=orjson.OPT_INDENT_2).decode("utf-8")


def clamp(value: Optional[float], low: float, high: float) -> Optional[float]:
    """Clamp a numeric value into [low, high]; non-numeric or non-finite input becomes None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric):
        return None
    return max(low, min(high, numeric))


def truncate_text(text: Optional[str], max_chars: int) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    if not text:
        return None
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip()


def dump_json_column(value: Any) -> Optional[str]:
    if value is None:
        return None
    return orjson.dumps(value).decode("utf-8")


def load_json_column(raw: Optional[str]) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        logger.warning("Stored JSON column could not be decoded: %r", raw[:200])
        return None


def parse_json_response(raw: str) -> Any:
    """Parse model output, digging the last JSON object out of chatty responses."""
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        candidates: List[Tuple[Any, int]] = []
        decoder = json.JSONDecoder()
        idx = 0
        while idx < len(raw):
            try:
                obj, end = decoder.raw_decode(raw, idx)
            except json.JSONDecodeError:
                idx += 1
                continue
            if isinstance(obj, (dict, list)):
                candidates.append((obj, idx))
            idx = max(end, idx + 1)

        def is_schema(obj: Any) -> bool:
            return isinstance(obj, dict) and "type" in obj and "properties" in obj and "required" in obj

        non_schema = [obj for obj, _ in candidates if not is_schema(obj)]
        if non_schema:
            return non_schema[-1]
        raise ValueError("Model response did not contain a JSON object")
