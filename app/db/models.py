# app/db/models.py
from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, Index

Base = declarative_base()


class AutomationRuleRow(Base):
    __tablename__ = "automation_rules"
    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(String(32), nullable=False, index=True)
    trigger_config = Column(JSON, nullable=False, default=dict)
    action_type = Column(String(32), nullable=False)
    action_config = Column(JSON, nullable=False, default=dict)
    conditions = Column(JSON, nullable=True)          # NULL = условий нет
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    # статистика запусков (меняется только движком)
    run_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_run_at = Column(DateTime(timezone=True), nullable=True)


class AutomationLogRow(Base):
    __tablename__ = "automation_logs"
    # автоинкремент даёт стабильный порядок "новые сверху" при равном времени
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    # без FK: журнал переживает удаление правила
    rule_id = Column(String(36), nullable=False, index=True)
    rule_name = Column(String(255), nullable=False, default="")
    triggered_at = Column(DateTime(timezone=True), nullable=False, index=True)
    trigger_data = Column(JSON, nullable=False, default=dict)
    condition_result = Column(Boolean, nullable=True)
    status = Column(String(16), nullable=False, index=True)
    action_result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_automation_logs_rule_seq", "rule_id", "seq"),
    )
