# automation/rules/storage.py
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from .types import AutomationRule, ExecutionLog, ExecutionStatus


# ======================================================================
# 1. ХРАНИЛИЩЕ ПРАВИЛ
# ======================================================================

class RuleStorage(ABC):
    """
    Абстрактное хранилище правил.
    Реализации:
      - in-memory (для тестов и стенда)
      - БД через SQLAlchemy
    Валидацию здесь не делаем: это задача движка, сюда приходят
    уже проверенные правила.
    """

    @abstractmethod
    def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        """Вернёт правило по id или None."""
        raise NotImplementedError

    @abstractmethod
    def list_rules(
        self,
        *,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[AutomationRule], int]:
        """
        Страница правил (новые сверху, при равном created_at: по id)
        и общее количество под фильтром.
        """
        raise NotImplementedError

    @abstractmethod
    def insert_rule(self, rule: AutomationRule) -> AutomationRule:
        raise NotImplementedError

    @abstractmethod
    def update_rule(self, rule: AutomationRule) -> Optional[AutomationRule]:
        """Перезаписать изменяемые поля. Нет такого id → None."""
        raise NotImplementedError

    @abstractmethod
    def delete_rule(self, rule_id: str) -> bool:
        """Удалить правило. False, если его не было."""
        raise NotImplementedError

    @abstractmethod
    def record_run(self, rule_id: str, status: ExecutionStatus, at: datetime) -> None:
        """
        Атомарно увеличить счётчики запусков.
        Правила уже нет: молча ничего не делаем.
        """
        raise NotImplementedError


# ======================================================================
# 2. ЖУРНАЛ ВЫПОЛНЕНИЯ
# ======================================================================

class ExecutionLogStorage(ABC):
    """
    Журнал только на добавление: записи не меняются и не удаляются
    вместе с правилом.
    """

    @abstractmethod
    def append(self, entry: ExecutionLog) -> ExecutionLog:
        """Добавить запись в журнал (к моменту возврата она сохранена)."""
        raise NotImplementedError

    @abstractmethod
    def list_recent(
        self,
        limit: int = 50,
        rule_id: Optional[str] = None,
    ) -> List[ExecutionLog]:
        """
        Вернуть последние записи, новые сверху.
        Можно отфильтровать по rule_id.
        """
        raise NotImplementedError


# ======================================================================
# 3. КОМПОЗИТ ДЛЯ ДВИЖКА
# ======================================================================

class RulesRepository:
    """
    Удобная обёртка, чтобы движок получил
    и правила, и журнал в одном объекте.
    """

    def __init__(
        self,
        rules: RuleStorage,
        execution_log: ExecutionLogStorage,
    ) -> None:
        self._rules = rules
        self._execution_log = execution_log

    # --- правила -------------------------------------------------------

    def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        return self._rules.get_rule(rule_id)

    def list_rules(
        self,
        *,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[AutomationRule], int]:
        return self._rules.list_rules(is_active=is_active, offset=offset, limit=limit)

    def insert_rule(self, rule: AutomationRule) -> AutomationRule:
        return self._rules.insert_rule(rule)

    def update_rule(self, rule: AutomationRule) -> Optional[AutomationRule]:
        return self._rules.update_rule(rule)

    def delete_rule(self, rule_id: str) -> bool:
        return self._rules.delete_rule(rule_id)

    def record_run(self, rule_id: str, status: ExecutionStatus, at: datetime) -> None:
        self._rules.record_run(rule_id, status, at)

    # --- журнал --------------------------------------------------------

    def append_execution_log(self, entry: ExecutionLog) -> ExecutionLog:
        return self._execution_log.append(entry)

    def list_recent_execution_logs(
        self,
        limit: int = 50,
        rule_id: Optional[str] = None,
    ) -> List[ExecutionLog]:
        return self._execution_log.list_recent(limit=limit, rule_id=rule_id)
