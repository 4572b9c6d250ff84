# automation/rules/sql_repositories.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from app.db.models import AutomationLogRow, AutomationRuleRow

from .storage import ExecutionLogStorage, RuleStorage
from .types import (
    ActionType,
    AutomationRule,
    ExecutionLog,
    ExecutionStatus,
    RuleStats,
    TriggerType,
)


def _utc(ts: Optional[datetime]) -> Optional[datetime]:
    # SQLite отдаёт naive; считаем его UTC
    if isinstance(ts, datetime) and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _row_to_rule(r: AutomationRuleRow) -> AutomationRule:
    return AutomationRule(
        id=r.id,
        name=r.name,
        description=r.description,
        trigger_type=TriggerType(r.trigger_type),
        trigger_config=dict(r.trigger_config or {}),
        action_type=ActionType(r.action_type),
        action_config=dict(r.action_config or {}),
        conditions=r.conditions,
        is_active=bool(r.is_active),
        created_by=r.created_by,
        created_at=_utc(r.created_at),
        updated_at=_utc(r.updated_at),
        stats=RuleStats(
            run_count=r.run_count or 0,
            success_count=r.success_count or 0,
            failure_count=r.failure_count or 0,
            last_run_at=_utc(r.last_run_at),
        ),
    )


def _row_to_log(r: AutomationLogRow) -> ExecutionLog:
    return ExecutionLog(
        id=r.id,
        rule_id=r.rule_id,
        rule_name=r.rule_name or "",
        triggered_at=_utc(r.triggered_at),
        trigger_data=dict(r.trigger_data or {}),
        condition_result=r.condition_result,
        status=ExecutionStatus(r.status),
        action_result=r.action_result,
        error_message=r.error_message,
        duration_ms=r.duration_ms or 0,
    )


# ======================================================================
# 1. ПРАВИЛА В БД
# ======================================================================

class SqlRuleStorage(RuleStorage):
    """
    Правила в таблице automation_rules.
    Каждая операция: своя короткая транзакция.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory

    def get_rule(self, rule_id: str) -> Optional[AutomationRule]:
        with self._sessions() as db:
            row = db.get(AutomationRuleRow, rule_id)
            return _row_to_rule(row) if row is not None else None

    def list_rules(
        self,
        *,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[AutomationRule], int]:
        q = select(AutomationRuleRow)
        cq = select(func.count()).select_from(AutomationRuleRow)
        if is_active is not None:
            q = q.where(AutomationRuleRow.is_active == is_active)
            cq = cq.where(AutomationRuleRow.is_active == is_active)

        # новые сверху, id: чтобы порядок был полным и страницы не "плыли"
        q = (
            q.order_by(AutomationRuleRow.created_at.desc(), AutomationRuleRow.id.desc())
            .offset(offset)
            .limit(limit)
        )

        with self._sessions() as db, db.begin():
            rows = db.execute(q).scalars().all()
            total = db.execute(cq).scalar_one()
            return [_row_to_rule(r) for r in rows], int(total)

    def insert_rule(self, rule: AutomationRule) -> AutomationRule:
        row = AutomationRuleRow(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            trigger_type=rule.trigger_type.value,
            trigger_config=rule.trigger_config,
            action_type=rule.action_type.value,
            action_config=rule.action_config,
            conditions=rule.conditions,
            is_active=rule.is_active,
            created_by=rule.created_by,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
            run_count=0,
            success_count=0,
            failure_count=0,
        )
        with self._sessions() as db, db.begin():
            db.add(row)
        return rule

    def update_rule(self, rule: AutomationRule) -> Optional[AutomationRule]:
        with self._sessions() as db, db.begin():
            row = db.get(AutomationRuleRow, rule.id)
            if row is None:
                return None
            row.name = rule.name
            row.description = rule.description
            row.trigger_type = rule.trigger_type.value
            row.trigger_config = rule.trigger_config
            row.action_type = rule.action_type.value
            row.action_config = rule.action_config
            row.conditions = rule.conditions
            row.is_active = rule.is_active
            row.updated_at = rule.updated_at
            db.flush()
            return _row_to_rule(row)

    def delete_rule(self, rule_id: str) -> bool:
        with self._sessions() as db, db.begin():
            row = db.get(AutomationRuleRow, rule_id)
            if row is None:
                return False
            db.delete(row)
            return True

    def record_run(self, rule_id: str, status: ExecutionStatus, at: datetime) -> None:
        values = {
            "run_count": AutomationRuleRow.run_count + 1,
            "last_run_at": at,
        }
        if status == ExecutionStatus.SUCCESS:
            values["success_count"] = AutomationRuleRow.success_count + 1
        elif status in (ExecutionStatus.FAILED, ExecutionStatus.ERROR):
            values["failure_count"] = AutomationRuleRow.failure_count + 1

        # один UPDATE: инкремент атомарен на уровне строки
        stmt = update(AutomationRuleRow).where(AutomationRuleRow.id == rule_id).values(**values)
        with self._sessions() as db, db.begin():
            db.execute(stmt)


# ======================================================================
# 2. ЖУРНАЛ В БД
# ======================================================================

class SqlExecutionLogStorage(ExecutionLogStorage):
    """Журнал в таблице automation_logs: только INSERT и SELECT."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory

    def append(self, entry: ExecutionLog) -> ExecutionLog:
        row = AutomationLogRow(
            id=entry.id,
            rule_id=entry.rule_id,
            rule_name=entry.rule_name,
            triggered_at=entry.triggered_at,
            trigger_data=entry.trigger_data,
            condition_result=entry.condition_result,
            status=entry.status.value,
            action_result=entry.action_result,
            error_message=entry.error_message,
            duration_ms=entry.duration_ms,
        )
        # commit до возврата: запись должна пережить падение процесса
        with self._sessions() as db, db.begin():
            db.add(row)
        return entry

    def list_recent(
        self,
        limit: int = 50,
        rule_id: Optional[str] = None,
    ) -> List[ExecutionLog]:
        q = select(AutomationLogRow)
        if rule_id is not None:
            q = q.where(AutomationLogRow.rule_id == rule_id)
        q = q.order_by(AutomationLogRow.seq.desc()).limit(limit)
        with self._sessions() as db:
            rows = db.execute(q).scalars().all()
            return [_row_to_log(r) for r in rows]
