# app/main.py
from __future__ import annotations

import logging

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from app.core.config import settings

# БД (создать таблицы automation_rules / automation_logs)
from app.db.session import init_db, session_factory

# Автоматизация
from app.automation.api.rules_api import install_error_handlers, router as automation_router
from app.automation.runtime import ensure_automation_started, stop_automation
from app.automation.rules_loader import load_rules_from_yaml

log = logging.getLogger("web")

# ─────────────────────────────────────────────────────────────────────────────
# Приложение
# ─────────────────────────────────────────────────────────────────────────────
app = FastAPI(title="Automation")

# cookie-сессии (auth_user проставляет внешний логин)
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret, same_site="lax")

install_error_handlers(app)
app.include_router(automation_router)


# ─────────────────────────────────────────────────────────────────────────────
# Старт/стоп
# ─────────────────────────────────────────────────────────────────────────────
@app.on_event("startup")
def _startup():
    # 1) грузим YAML
    settings.load_yaml_config()

    # 2) создаём таблицы БД
    init_db()

    # 3) поднимаем движок
    engine = ensure_automation_started(session_factory())

    # 4) начальные правила, только в пустую базу (иначе дубли при каждом рестарте)
    rules_file = settings.rules_file
    if rules_file:
        if engine.list_rules(limit=1).total == 0:
            try:
                load_rules_from_yaml(rules_file, engine, settings.automation["seed_user"])
            except FileNotFoundError as e:
                log.error("rules seed skipped: %s", e)
        else:
            log.info("rules seed skipped: store is not empty")

    if not settings.automation_enabled:
        log.warning("automation is disabled in config: executions will be rejected")
    log.info("automation api ready")


@app.on_event("shutdown")
def _shutdown():
    stop_automation()


@app.get("/health")
def health():
    return {"status": "ok", "automationEnabled": settings.automation_enabled}

