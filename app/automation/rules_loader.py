# app/automation/rules_loader.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from app.automation.rules.engine import RuleEngine
from app.automation.rules.errors import ValidationError
from app.automation.rules.types import AutomationRule

log = logging.getLogger("automation")


def load_rules_from_yaml(path: str, engine: RuleEngine, created_by: str) -> List[AutomationRule]:
    """
    Создаёт правила из YAML-файла вида:

    rules:
      - name: "Welcome new members"
        triggerType: "MEMBER_CREATED"
        actionType: "SEND_EMAIL"
        actionConfig:
          subject: "Welcome, {{member.firstName}}!"
          body: "We are glad to have you."
        conditions:
          and:
            - { field: "member.email", op: "contains", value: "@" }

    Каждое правило идёт через обычный engine.create_rule, то есть с той же
    валидацией. Сначала проверяются все записи: ошибка в любой даёт
    ValidationError с номером записи, и ни одно правило не создаётся.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"rules file not found: {path}")

    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValidationError({"rules": "root must be an object with a 'rules' list"})
    items = data.get("rules") or []
    if not isinstance(items, list):
        raise ValidationError({"rules": "must be a list"})

    definitions: List[Dict[str, Any]] = []
    for idx, rd in enumerate(items):
        if not isinstance(rd, dict):
            raise ValidationError({f"rules[{idx}]": "must be an object"})
        definitions.append(dict(rd))

    # сначала проверяем все записи: ошибка в любой → не создаём ни одной
    for idx, definition in enumerate(definitions):
        try:
            engine.check_definition(definition, created_by)
        except ValidationError as exc:
            details = {f"rules[{idx}].{k}": v for k, v in exc.details.items()}
            raise ValidationError(details, f"rules[{idx}]: {exc.message}") from exc

    loaded = [engine.create_rule(definition, created_by) for definition in definitions]

    log.info("loaded %d automation rules from %s", len(loaded), path)
    return loaded
