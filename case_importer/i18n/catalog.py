from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

"""Message catalog for workbook and summary strings.

Strings live in messages.yml keyed by locale, then by dotted key
(``headers.client_email``). Unknown locales fall back to DEFAULT_LOCALE and
unknown keys return the key itself, so a missing translation is visible
instead of fatal.
"""

__all__ = [
    "DEFAULT_LOCALE",
    "MESSAGES_PATH",
    "supported_locales",
    "normalize_locale",
    "translate",
    "header_labels",
]

MESSAGES_PATH = Path(__file__).with_name("messages.yml")
DEFAULT_LOCALE = "en"


@lru_cache(maxsize=1)
def _catalog() -> dict[str, dict[str, Any]]:
    data = yaml.safe_load(MESSAGES_PATH.read_text(encoding="utf-8")) or {}
    return data


def supported_locales() -> list[str]:
    return sorted(_catalog().keys())


def normalize_locale(locale: str | None) -> str:
    """``es-CO`` / ``es_CO`` / ``ES`` -> ``es``; unsupported -> default."""
    if not locale:
        return DEFAULT_LOCALE
    base = locale.replace("_", "-").split("-", 1)[0].lower()
    return base if base in _catalog() else DEFAULT_LOCALE


def _lookup(locale: str, key: str) -> str | None:
    node: Any = _catalog().get(locale, {})
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node if isinstance(node, str) else None


def translate(locale: str | None, key: str, **params: Any) -> str:
    loc = normalize_locale(locale)
    text = _lookup(loc, key)
    if text is None and loc != DEFAULT_LOCALE:
        text = _lookup(DEFAULT_LOCALE, key)
    if text is None:
        return key
    return text.format(**params) if params else text


def header_labels(column: str) -> set[str]:
    """All localized labels of a column header, lower-cased."""
    labels = {column.lower()}
    for loc in _catalog():
        text = _lookup(loc, f"headers.{column}")
        if text:
            labels.add(text.strip().lower())
    return labels
