# automation/rules/repositories.py
from __future__ import annotations

import copy
import itertools
from collections import deque
from datetime import datetime
from threading import RLock
from typing import Deque, Dict, List, Optional, Tuple

from .types import AutomationRule, ExecutionLog, ExecutionStatus
from .storage import RuleStorage, ExecutionLogStorage


# ======================================================================
# 1. IN-MEMORY ХРАНИЛИЩЕ ПРАВИЛ
# ======================================================================

class InMemoryRuleStorage(RuleStorage):
    """
    Простейшее хранилище правил в памяти.
    Подходит для:
      - unit-тестов,
      - запуска на стенде без БД.
    Наружу отдаём копии, чтобы вызывающий код не правил наши объекты.
    """

    def __init__(self) -> None:
        self._rules: Dict[str, AutomationRule] = {}
        self._order: Dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = RLock()

    def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return copy.deepcopy(rule) if rule is not None else None

    def list_rules(
        self,
        *,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[AutomationRule], int]:
        with self._lock:
            rules = [
                r for r in self._rules.values()
                if is_active is None or r.is_active == is_active
            ]
            # новые сверху; при равном времени: кто вставлен позже
            rules.sort(key=lambda r: (r.created_at, self._order[r.id]), reverse=True)
            page = rules[offset:offset + limit]
            return [copy.deepcopy(r) for r in page], len(rules)

    def insert_rule(self, rule: AutomationRule) -> AutomationRule:
        with self._lock:
            if rule.id in self._rules:
                raise KeyError(f"rule {rule.id} already exists")
            self._rules[rule.id] = copy.deepcopy(rule)
            self._order[rule.id] = next(self._seq)
            return copy.deepcopy(rule)

    def update_rule(self, rule: AutomationRule) -> Optional[AutomationRule]:
        with self._lock:
            current = self._rules.get(rule.id)
            if current is None:
                return None
            updated = copy.deepcopy(rule)
            # счётчики ведёт только record_run
            updated.stats = current.stats
            self._rules[rule.id] = updated
            return copy.deepcopy(updated)

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            self._order.pop(rule_id, None)
            return self._rules.pop(rule_id, None) is not None

    def record_run(self, rule_id: str, status: ExecutionStatus, at: datetime) -> None:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return
            stats = rule.stats
            stats.run_count += 1
            stats.last_run_at = at
            if status == ExecutionStatus.SUCCESS:
                stats.success_count += 1
            elif status in (ExecutionStatus.FAILED, ExecutionStatus.ERROR):
                stats.failure_count += 1


# ======================================================================
# 2. IN-MEMORY ЖУРНАЛ ВЫПОЛНЕНИЯ
# ======================================================================

class InMemoryExecutionLogStorage(ExecutionLogStorage):
    """
    Журнал выполнения в памяти.
    Хранит последние N записей (по умолчанию 1000) в deque.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._max_entries = max_entries
        self._entries: Deque[ExecutionLog] = deque(maxlen=max_entries)
        self._lock = RLock()

    def append(self, entry: ExecutionLog) -> ExecutionLog:
        with self._lock:
            self._entries.appendleft(entry)  # новые: в начало
        return entry

    def list_recent(
        self,
        limit: int = 50,
        rule_id: Optional[str] = None,
    ) -> List[ExecutionLog]:
        with self._lock:
            if rule_id is None:
                return list(self._entries)[:limit]

            # фильтруем по rule_id
            filtered = [e for e in self._entries if e.rule_id == rule_id]
            return filtered[:limit]
