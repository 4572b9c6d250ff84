# automation/rules/engine.py
from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .actions import ActionDispatcher
from .conditions import DEFAULT_MAX_DEPTH, validate_conditions
from .errors import (
    AutomationDisabledError,
    ConditionSyntaxError,
    InternalConsistencyError,
    NotFoundError,
    RuleInactiveError,
    ValidationError,
)
from .evaluator import ConditionEvaluator
from .storage import RulesRepository
from .types import (
    AutomationRule,
    ExecutionLog,
    ExecutionStatus,
    RulePage,
    parse_action_type,
    parse_trigger_type,
)

log = logging.getLogger("automation")

# camelCase (как приходит из API) → поле AutomationRule
_EDITABLE_FIELDS = {
    "name": "name",
    "description": "description",
    "triggerType": "trigger_type",
    "triggerConfig": "trigger_config",
    "actionType": "action_type",
    "actionConfig": "action_config",
    "conditions": "conditions",
    "isActive": "is_active",
}

# служебные поля: во входе допускаем, но молча игнорируем
_READONLY_FIELDS = {
    "id", "createdBy", "createdAt", "updatedAt",
    "runCount", "successCount", "failureCount", "lastRunAt",
}

NAME_MAX_LEN = 255


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _json_safe(value: Any) -> Any:
    """Снимок в чистый JSON: чтобы журнал точно сохранился в любом хранилище."""
    return json.loads(json.dumps(value, default=str))


def _clamp(value: Optional[int], default: int, maximum: int) -> int:
    if value is None or value < 1:
        return default
    return min(value, maximum)


class RuleEngine:
    """
    Движок правил автоматизации:
      - CRUD правил с валидацией (в хранилище попадает только корректное)
      - execute: загрузить правило → проверить условия → выполнить действие
        → записать ровно одну запись журнала
      - чтение журнала

    Событий сам не слушает и расписаний не ведёт: execute вызывает
    внешний источник (HTTP, планировщик) с уже собранной trigger data.

    Состояния между вызовами нет, поэтому execute можно гонять
    параллельно из разных потоков.
    """

    def __init__(
        self,
        *,
        rules_repo: RulesRepository,
        dispatcher: ActionDispatcher,
        evaluator: Optional[ConditionEvaluator] = None,
        enabled: Union[bool, Callable[[], bool]] = True,
        page_size_default: int = 20,
        page_size_max: int = 100,
        log_limit_default: int = 50,
        log_limit_max: int = 200,
        conditions_max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self._repo = rules_repo
        self._dispatcher = dispatcher
        self._evaluator = evaluator or ConditionEvaluator(max_depth=conditions_max_depth)
        self._enabled = enabled if callable(enabled) else (lambda: bool(enabled))
        self._page_size_default = page_size_default
        self._page_size_max = page_size_max
        self._log_limit_default = log_limit_default
        self._log_limit_max = log_limit_max
        self._max_depth = conditions_max_depth

    @property
    def dispatcher(self) -> ActionDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------ #
    # ПРАВИЛА
    # ------------------------------------------------------------------ #
    def list_rules(
        self,
        *,
        is_active: Optional[bool] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
    ) -> RulePage:
        page = page if page and page > 0 else 1
        limit = _clamp(limit, self._page_size_default, self._page_size_max)
        items, total = self._repo.list_rules(
            is_active=is_active,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return RulePage(items=items, total=total, page=page, limit=limit)

    def get_rule(self, rule_id: str) -> AutomationRule:
        rule = self._repo.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("Automation rule")
        return rule

    def create_rule(self, definition: Mapping[str, Any], created_by: str) -> AutomationRule:
        """
        definition: словарь в формате API (camelCase).
        Обязательны name, triggerType, actionType.
        """
        rule = self._build_rule(definition, created_by)
        saved = self._repo.insert_rule(rule)
        log.info("rule %s (%s) created by %s", saved.id, saved.name, created_by)
        return saved

    def check_definition(self, definition: Mapping[str, Any], created_by: str) -> None:
        """Те же проверки, что в create_rule, но в хранилище ничего не пишем."""
        self._build_rule(definition, created_by)

    def _build_rule(self, definition: Mapping[str, Any], created_by: str) -> AutomationRule:
        if not created_by or not str(created_by).strip():
            raise ValidationError({"createdBy": "is required"})

        fields = self._validate_definition(definition, partial=False)
        now = _now()
        rule = AutomationRule(
            id=str(uuid.uuid4()),
            name=fields["name"],
            description=fields.get("description"),
            trigger_type=fields["trigger_type"],
            trigger_config=fields.get("trigger_config") or {},
            action_type=fields["action_type"],
            action_config=fields.get("action_config") or {},
            conditions=fields.get("conditions"),
            is_active=fields.get("is_active", True),
            created_by=str(created_by),
            created_at=now,
            updated_at=now,
        )
        self._check_action_config(rule)
        return rule

    def update_rule(self, rule_id: str, partial: Mapping[str, Any]) -> AutomationRule:
        """
        Частичное обновление: меняются только переданные поля,
        остальные остаются как были.
        """
        rule = self.get_rule(rule_id)
        fields = self._validate_definition(partial, partial=True)

        for attr, value in fields.items():
            setattr(rule, attr, value)
        if "action_type" in fields or "action_config" in fields:
            self._check_action_config(rule)
        rule.updated_at = _now()

        saved = self._repo.update_rule(rule)
        if saved is None:
            # удалили между чтением и записью
            raise NotFoundError("Automation rule")
        log.info("rule %s (%s) updated: %s", saved.id, saved.name, sorted(fields))
        return saved

    def delete_rule(self, rule_id: str) -> None:
        """Нет такого правила → NotFoundError. Журнал правила остаётся."""
        if not self._repo.delete_rule(rule_id):
            raise NotFoundError("Automation rule")
        log.info("rule %s deleted", rule_id)

    # ------------------------------------------------------------------ #
    # ЗАПУСК
    # ------------------------------------------------------------------ #
    def execute(
        self,
        rule_id: str,
        trigger_data: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionLog:
        """
        Запустить правило на trigger data.

        До проверки условий (нет правила, правило выключено, автоматика
        отключена, нет обработчика): исключение, журнал НЕ пишем.
        Дальше любой исход (SKIPPED / SUCCESS / FAILED / ERROR):
        ровно одна запись журнала, которую и возвращаем.
        """
        started = time.monotonic()
        triggered_at = _now()

        rule = self.get_rule(rule_id)
        if not rule.is_active:
            raise RuleInactiveError(rule.id)
        if not self._enabled():
            raise AutomationDisabledError()
        # обработчика нет: дефект развёртывания, приписывать его правилу нечего
        self._dispatcher.registry.resolve(rule.action_type)

        data = _json_safe(dict(trigger_data or {}))

        condition_result: Optional[bool] = None
        action_result: Optional[Dict[str, Any]] = None
        error_message: Optional[str] = None

        try:
            condition_result = self._evaluator.evaluate_payload(rule.conditions, data)
        except Exception as exc:  # noqa: BLE001
            log.exception("rule %s (%s): condition evaluation failed", rule.id, rule.name)
            status = ExecutionStatus.ERROR
            error_message = f"Condition evaluation failed: {exc}"
        else:
            log.debug(
                "rule %s (%s): conditions %s",
                rule.id,
                rule.name,
                "n/a" if condition_result is None else ("OK" if condition_result else "NO"),
            )
            if condition_result is False:
                status = ExecutionStatus.SKIPPED
            else:
                status, action_result, error_message = self._run_action(rule, data)

        entry = ExecutionLog(
            id=str(uuid.uuid4()),
            rule_id=rule.id,
            rule_name=rule.name,
            triggered_at=triggered_at,
            trigger_data=data,
            condition_result=condition_result,
            status=status,
            action_result=action_result,
            error_message=error_message,
            duration_ms=int(round((time.monotonic() - started) * 1000)),
        )
        saved = self._repo.append_execution_log(entry)

        try:
            self._repo.record_run(rule.id, status, triggered_at)
        except Exception as exc:  # noqa: BLE001
            # статистика вторична, запись журнала уже есть
            log.warning("rule %s: run stats update failed: %s", rule.id, exc)

        if status == ExecutionStatus.FAILED:
            log.warning(
                "rule %s (%s): FAILED in %sms: %s",
                rule.id, rule.name, entry.duration_ms, error_message,
            )
        else:
            log.info("rule %s (%s): %s in %sms", rule.id, rule.name, status.value, entry.duration_ms)
        return saved

    def _run_action(
        self,
        rule: AutomationRule,
        data: Dict[str, Any],
    ) -> Tuple[ExecutionStatus, Optional[Dict[str, Any]], Optional[str]]:
        """(status, actionResult, errorMessage). Наружу только InternalConsistencyError."""
        try:
            outcome = self._dispatcher.dispatch(rule.action_type, rule.action_config, data)
        except InternalConsistencyError:
            raise
        except Exception as exc:  # noqa: BLE001
            # например пул уже остановлен (stop_automation во время запроса)
            log.exception("rule %s (%s): action dispatch failed", rule.id, rule.name)
            return ExecutionStatus.FAILED, None, f"Action dispatch failed: {exc}"

        if not outcome.ok:
            return ExecutionStatus.FAILED, None, outcome.error

        try:
            summary = _json_safe(outcome.summary or {})
        except Exception as exc:  # noqa: BLE001
            # действие уже выполнено, но результат в журнал не ложится
            log.error("rule %s (%s): action result is not serializable: %s", rule.id, rule.name, exc)
            return ExecutionStatus.FAILED, None, f"Action result is not serializable: {exc}"
        return ExecutionStatus.SUCCESS, summary, None

    # ------------------------------------------------------------------ #
    # ЖУРНАЛ
    # ------------------------------------------------------------------ #
    def list_logs(
        self,
        *,
        rule_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionLog]:
        limit = _clamp(limit, self._log_limit_default, self._log_limit_max)
        return self._repo.list_recent_execution_logs(limit=limit, rule_id=rule_id)

    # ------------------------------------------------------------------ #
    # ВАЛИДАЦИЯ
    # ------------------------------------------------------------------ #
    def _validate_definition(self, data: Mapping[str, Any], *, partial: bool) -> Dict[str, Any]:
        """
        Проверить вход и вернуть {поле AutomationRule: значение}.
        Все ошибки собираем сразу, по полям.
        """
        if not isinstance(data, Mapping):
            raise ValidationError({"body": "expected an object"})

        errors: Dict[str, str] = {}
        out: Dict[str, Any] = {}

        for key in data:
            if key not in _EDITABLE_FIELDS and key not in _READONLY_FIELDS:
                errors[key] = "unknown field"

        if not partial:
            for key in ("name", "triggerType", "actionType"):
                if data.get(key) is None:
                    errors[key] = "is required"

        if "name" in data and "name" not in errors:
            name = data["name"]
            if not isinstance(name, str) or not name.strip():
                errors["name"] = "must be a non-empty string"
            elif len(name.strip()) > NAME_MAX_LEN:
                errors["name"] = f"must be at most {NAME_MAX_LEN} characters"
            else:
                out["name"] = name.strip()

        if "description" in data:
            desc = data["description"]
            if desc is not None and not isinstance(desc, str):
                errors["description"] = "must be a string"
            else:
                out["description"] = desc

        if "triggerType" in data and "triggerType" not in errors:
            try:
                out["trigger_type"] = parse_trigger_type(data["triggerType"])
            except ValueError:
                errors["triggerType"] = f"unknown trigger type {data['triggerType']!r}"

        if "actionType" in data and "actionType" not in errors:
            try:
                out["action_type"] = parse_action_type(data["actionType"])
            except ValueError:
                errors["actionType"] = f"unknown action type {data['actionType']!r}"

        for key in ("triggerConfig", "actionConfig"):
            if key in data:
                cfg = data[key]
                if cfg is None:
                    out[_EDITABLE_FIELDS[key]] = {}
                elif not isinstance(cfg, Mapping):
                    errors[key] = "must be an object"
                else:
                    out[_EDITABLE_FIELDS[key]] = dict(cfg)

        if "conditions" in data:
            cond = data["conditions"]
            if cond is None or cond == {}:
                out["conditions"] = None
            else:
                try:
                    validate_conditions(cond, max_depth=self._max_depth)
                except ConditionSyntaxError as exc:
                    errors.update(exc.details)
                else:
                    out["conditions"] = dict(cond)

        if "isActive" in data:
            if not isinstance(data["isActive"], bool):
                errors["isActive"] = "must be a boolean"
            else:
                out["is_active"] = data["isActive"]

        if errors:
            raise ValidationError(errors)
        return out

    def _check_action_config(self, rule: AutomationRule) -> None:
        errors = self._dispatcher.validate_config(rule.action_type, rule.action_config)
        if errors:
            raise ValidationError(errors)
