# automation/rules/errors.py
from __future__ import annotations

from typing import Dict, Optional


class AutomationError(Exception):
    """
    Базовая ошибка движка. HTTP-слой превращает её в JSON-ответ
    с status_code / code / details.
    """
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(AutomationError):
    """Некорректное определение правила: до хранилища не доходит."""
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        details: Optional[Dict[str, str]] = None,
        message: str = "Validation failed",
    ) -> None:
        super().__init__(message, details)


class ConditionSyntaxError(ValidationError):
    """Дерево условий не разбирается. path: где именно (conditions.and[1].op)."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__({path: reason}, f"{path}: {reason}")
        self.path = path
        self.reason = reason


class NotFoundError(AutomationError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Automation rule") -> None:
        super().__init__(f"{resource} not found")


class RuleInactiveError(AutomationError):
    status_code = 409
    code = "RULE_INACTIVE"

    def __init__(self, rule_id: str) -> None:
        super().__init__("Cannot execute an inactive automation rule", {"id": rule_id})
        self.rule_id = rule_id


class AutomationDisabledError(AutomationError):
    status_code = 503
    code = "AUTOMATION_DISABLED"

    def __init__(self) -> None:
        super().__init__("Automation feature is disabled")


class InternalConsistencyError(AutomationError):
    """Для actionType нет обработчика: дефект развёртывания, не данных правила."""
    status_code = 500
    code = "INTERNAL_ERROR"


# Эти два наружу не летят: orchestrator превращает их в статус журнала.

class ConditionEvaluationError(AutomationError):
    code = "CONDITION_EVALUATION_ERROR"


class ActionDispatchError(AutomationError):
    code = "ACTION_DISPATCH_ERROR"
