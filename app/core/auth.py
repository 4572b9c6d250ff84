# app/core/auth.py
from typing import Optional

from fastapi import HTTPException, Request, status

# заголовок, который проставляет шлюз после проверки токена
ACTOR_HEADER = "X-User-Id"


def resolve_actor(request: Request) -> Optional[str]:
    """
    Кто вызывает. Сами мы никого не аутентифицируем:
      1) cookie-сессия (auth_user), если подключен SessionMiddleware;
      2) заголовок X-User-Id от вышестоящего шлюза.
    """
    if "session" in request.scope:
        user = request.session.get("auth_user")
        if user:
            return str(user)
    user = (request.headers.get(ACTOR_HEADER) or "").strip()
    return user or None


def require_actor(request: Request) -> str:
    actor = resolve_actor(request)
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return actor
