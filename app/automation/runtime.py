# app/automation/runtime.py
from __future__ import annotations

import logging
import threading
from typing import Optional

from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.automation.rules.actions import (
    ActionDispatcher,
    MemberTagFunc,
    build_default_registry,
)
from app.automation.rules.engine import RuleEngine
from app.automation.rules.sql_repositories import SqlExecutionLogStorage, SqlRuleStorage
from app.automation.rules.storage import RulesRepository
from app.automation.senders import EkdSendClient, HttpWebhookInvoker

log = logging.getLogger("automation")

# Глобальные синглтоны
_ENGINE: Optional[RuleEngine] = None
_LOCK = threading.Lock()


def build_engine(
    session_factory: sessionmaker,
    *,
    tag_member: Optional[MemberTagFunc] = None,
) -> RuleEngine:
    """
    Собрать движок по текущим settings:
    хранилища в БД + EKDSend (email/SMS) + webhook.
    tag_member: из подсистемы участников, если она есть в процессе.
    """
    au = settings.automation
    timeout = float(au["action_timeout_s"])

    ekd = settings.ekdsend
    ekdsend = EkdSendClient(
        api_url=ekd["api_url"],
        api_key=ekd["api_key"],
        timeout=timeout,
        from_email=ekd["from_email"],
        from_name=ekd["from_name"],
        sms_from=ekd["sms_from"],
    )
    if not ekdsend.configured:
        log.warning("EKDSend api key is empty: SEND_EMAIL / SEND_MESSAGE will fail")

    registry = build_default_registry(
        send_message=ekdsend.send_sms,
        send_email=ekdsend.send_email,
        call_webhook=HttpWebhookInvoker(timeout=timeout),
        tag_member=tag_member,
        webhook_schemes=settings.webhook_schemes,
    )
    dispatcher = ActionDispatcher(
        registry,
        timeout_s=timeout,
        max_workers=int(au["action_workers"]),
    )

    repo = RulesRepository(
        SqlRuleStorage(session_factory),
        SqlExecutionLogStorage(session_factory),
    )

    return RuleEngine(
        rules_repo=repo,
        dispatcher=dispatcher,
        # флаг читаем на каждый запуск: конфиг могут перезагрузить
        enabled=lambda: settings.automation_enabled,
        page_size_default=int(au["page_size_default"]),
        page_size_max=int(au["page_size_max"]),
        log_limit_default=int(au["log_limit_default"]),
        log_limit_max=int(au["log_limit_max"]),
        conditions_max_depth=int(au["conditions_max_depth"]),
    )


def ensure_automation_started(
    session_factory: sessionmaker,
    *,
    tag_member: Optional[MemberTagFunc] = None,
) -> RuleEngine:
    """
    Инициализировать движок автоматизации, если ещё не инициализирован.
    Вызываем один раз на старте приложения (после init_db).
    """
    global _ENGINE
    with _LOCK:
        if _ENGINE is None:
            _ENGINE = build_engine(session_factory, tag_member=tag_member)
            log.info(
                "automation engine started, handlers: %s",
                ", ".join(t.value for t in _ENGINE.dispatcher.registry.types()),
            )
        return _ENGINE


def set_engine(engine: Optional[RuleEngine]) -> None:
    """Подставить готовый движок (тесты) или сбросить его (None)."""
    global _ENGINE
    with _LOCK:
        _ENGINE = engine


def stop_automation() -> None:
    global _ENGINE
    with _LOCK:
        engine = _ENGINE
        _ENGINE = None
    if engine is not None:
        # дождёмся начатых действий, чтобы их итог попал в лог
        engine.dispatcher.shutdown()


def engine_instance() -> Optional[RuleEngine]:
    """Вернёт текущий инстанс RuleEngine (или None, если не инициализирован)."""
    return _ENGINE
