# app/automation/api/rules_api.py
from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.auth import require_actor
from app.automation.runtime import engine_instance
from app.automation.rules.engine import RuleEngine
from app.automation.rules.errors import AutomationError

log = logging.getLogger("automation.api")

router = APIRouter(prefix="/api/automation", tags=["automation"])


# ---------------------------------------------------------------------------
# Ответы
# ---------------------------------------------------------------------------

def _ok(data: Any, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"success": True, "data": data}
    if metadata is not None:
        out["metadata"] = metadata
    return out


def _error(status_code: int, code: str, message: str, details: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message, "details": details or {}},
        },
    )


def pagination_meta(total: int, page: int, limit: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit > 0 else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


async def _automation_error_handler(request: Request, exc: AutomationError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s: %s", request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.code, exc.message, exc.details)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: Dict[str, str] = {}
    for err in exc.errors():
        loc = [str(x) for x in err.get("loc", ())]
        # первый элемент: body/query/path
        key = ".".join(loc[1:]) or (loc[0] if loc else "body")
        details[key] = str(err.get("msg", "invalid value"))
    return _error(400, "VALIDATION_ERROR", "Validation failed", details)


# HTTPException (401 без актора, 500 без движка) → тот же конверт
_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    500: "INTERNAL_ERROR",
}


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s: %s", request.method, request.url.path, exc.detail)
    code = _HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
    resp = _error(exc.status_code, code, str(exc.detail))
    if getattr(exc, "headers", None):
        resp.headers.update(exc.headers)
    return resp


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AutomationError, _automation_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)


# ---------------------------------------------------------------------------
# DTO
# ---------------------------------------------------------------------------

class RuleCreateDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    description: Optional[str] = None
    trigger_type: str = Field(alias="triggerType")
    trigger_config: Optional[Dict[str, Any]] = Field(default=None, alias="triggerConfig")
    action_type: str = Field(alias="actionType")
    action_config: Optional[Dict[str, Any]] = Field(default=None, alias="actionConfig")
    conditions: Optional[Dict[str, Any]] = None
    is_active: bool = Field(default=True, alias="isActive")


class RuleUpdateDTO(BaseModel):
    """Все поля необязательны: меняем только то, что пришло."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    trigger_type: Optional[str] = Field(default=None, alias="triggerType")
    trigger_config: Optional[Dict[str, Any]] = Field(default=None, alias="triggerConfig")
    action_type: Optional[str] = Field(default=None, alias="actionType")
    action_config: Optional[Dict[str, Any]] = Field(default=None, alias="actionConfig")
    conditions: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")


class ExecuteDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    trigger_data: Dict[str, Any] = Field(default_factory=dict, alias="triggerData")


def _definition(body: BaseModel) -> Dict[str, Any]:
    # лишние ключи проверяет движок (служебные игнорирует, прочие: ошибка)
    out = body.model_dump(by_alias=True, exclude_unset=True)
    out.update(body.model_extra or {})
    return out


def get_engine() -> RuleEngine:
    engine = engine_instance()
    if engine is None:
        raise HTTPException(500, "Automation engine is not initialized")
    return engine


# ---------------------------------------------------------------------------
# Эндпоинты
# sync-функции: FastAPI гоняет их в пуле потоков, и обрыв соединения
# клиентом не прерывает уже начатый запуск до записи в журнал.
# ---------------------------------------------------------------------------

@router.get("")
def list_rules(
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    _actor: str = Depends(require_actor),
    engine: RuleEngine = Depends(get_engine),
):
    result = engine.list_rules(is_active=is_active, page=page, limit=limit)
    return _ok(
        [r.to_dict() for r in result.items],
        pagination_meta(result.total, result.page, result.limit),
    )


@router.post("", status_code=201)
def create_rule(
    body: RuleCreateDTO,
    actor: str = Depends(require_actor),
    engine: RuleEngine = Depends(get_engine),
):
    rule = engine.create_rule(_definition(body), actor)
    return _ok(rule.to_dict())


@router.get("/logs")
def list_logs(
    rule_id: Optional[str] = Query(None, alias="ruleId"),
    limit: Optional[int] = Query(None),
    _actor: str = Depends(require_actor),
    engine: RuleEngine = Depends(get_engine),
):
    logs = engine.list_logs(rule_id=rule_id, limit=limit)
    return _ok([e.to_dict() for e in logs])


@router.get("/{rule_id}")
def get_rule(
    rule_id: str,
    _actor: str = Depends(require_actor),
    engine: RuleEngine = Depends(get_engine),
):
    return _ok(engine.get_rule(rule_id).to_dict())


@router.put("/{rule_id}")
def update_rule(
    rule_id: str,
    body: RuleUpdateDTO,
    _actor: str = Depends(require_actor),
    engine: RuleEngine = Depends(get_engine),
):
    partial = _definition(body)
    return _ok(engine.update_rule(rule_id, partial).to_dict())


@router.delete("/{rule_id}")
def delete_rule(
    rule_id: str,
    _actor: str = Depends(require_actor),
    engine: RuleEngine = Depends(get_engine),
):
    engine.delete_rule(rule_id)
    return _ok({"message": "Automation rule deleted"})


@router.post("/{rule_id}/execute")
def execute_rule(
    rule_id: str,
    body: Optional[ExecuteDTO] = Body(None),
    actor: str = Depends(require_actor),
    engine: RuleEngine = Depends(get_engine),
):
    trigger_data = body.trigger_data if body is not None else {}
    log.debug("execute rule %s requested by %s", rule_id, actor)
    return _ok(engine.execute(rule_id, trigger_data).to_dict())
