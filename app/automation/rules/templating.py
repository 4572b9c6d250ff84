# automation/rules/templating.py
from __future__ import annotations

import re
from typing import Any, Mapping

from .evaluator import is_missing, resolve_path

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


def render(value: Any, data: Mapping[str, Any]) -> Any:
    """
    Подстановка {{member.firstName}} из trigger data.

    - строка целиком из одного плейсхолдера → исходное значение
      (список телефонов останется списком), нет поля → None;
    - плейсхолдер внутри текста → str(значение), нет поля → "";
    - dict / list обходятся рекурсивно, остальное возвращается как есть.
    """
    if isinstance(value, str):
        return _render_str(value, data)
    if isinstance(value, dict):
        return {k: render(v, data) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, data) for v in value]
    return value


def _render_str(text: str, data: Mapping[str, Any]) -> Any:
    whole = _PLACEHOLDER_RE.fullmatch(text.strip())
    if whole:
        found = resolve_path(data, whole.group(1))
        return None if is_missing(found) else found

    def _sub(m: "re.Match[str]") -> str:
        found = resolve_path(data, m.group(1))
        if is_missing(found) or found is None:
            return ""
        return str(found)

    return _PLACEHOLDER_RE.sub(_sub, text)
