# automation/rules/actions.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from .errors import InternalConsistencyError
from .templating import render
from .types import ActionOutcome, ActionType

log = logging.getLogger("automation.actions")


# ---- сигнатуры внешних "возможностей" (передаются снаружи) -----------------

# SMS: (получатели, текст) → summary
MessageSendFunc = Callable[[List[str], str], Dict[str, Any]]

# Email: (получатели, тема, тело, доп. опции) → summary
EmailSendFunc = Callable[[List[str], str, str, Dict[str, Any]], Dict[str, Any]]

# Webhook: (method, url, json, headers) → summary
WebhookCallFunc = Callable[[str, str, Dict[str, Any], Dict[str, str]], Dict[str, Any]]

# Теги участника: (member_id, tags) → summary
MemberTagFunc = Callable[[str, List[str]], Dict[str, Any]]

# Обработчик действия: (actionConfig, triggerData) → ActionOutcome
ActionHandler = Callable[[Dict[str, Any], Dict[str, Any]], ActionOutcome]


# ============================================================================
# Обработчики
# ============================================================================

def _recipients(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(r).strip() for r in raw if r is not None and str(r).strip()]
    s = str(raw).strip()
    if not s:
        return []
    return [p.strip() for p in s.split(",") if p.strip()]


def _text(raw: Any, data: Dict[str, Any]) -> str:
    value = render("" if raw is None else str(raw), data)
    return "" if value is None else str(value)


def _outcome(result: Dict[str, Any], **base: Any) -> ActionOutcome:
    # ответ отправителя дополняет, но не перетирает базовые поля
    summary = dict(result)
    summary.update(base)
    return ActionOutcome(summary=summary)


class SendMessageHandler:
    """
    SEND_MESSAGE: SMS через MessageSendFunc.

    actionConfig:
      to:   строка / список (по умолчанию {{member.phone}})
      body: текст, плейсхолдеры {{...}} подставляются из trigger data
    """
    required = ("body",)

    def __init__(self, send: Optional[MessageSendFunc]) -> None:
        self._send = send

    def __call__(self, config: Dict[str, Any], data: Dict[str, Any]) -> ActionOutcome:
        if self._send is None:
            return ActionOutcome.failure("message sender is not configured")

        to = _recipients(render(config.get("to", "{{member.phone}}"), data))
        if not to:
            return ActionOutcome.failure("no message recipients resolved")
        body = _text(config.get("body"), data)
        if not body.strip():
            return ActionOutcome.failure("message body is empty")

        result = self._send(to, body) or {}
        return _outcome(result, channel="sms", recipients=to)


class SendEmailHandler:
    """
    SEND_EMAIL: письмо через EmailSendFunc.

    actionConfig:
      to (по умолчанию {{member.email}}), subject, body,
      template / templateData (вместо subject+body), fromName, replyTo,
      cc / bcc (строка через запятую или список)
    """
    required = ()

    def __init__(self, send: Optional[EmailSendFunc]) -> None:
        self._send = send

    def __call__(self, config: Dict[str, Any], data: Dict[str, Any]) -> ActionOutcome:
        if self._send is None:
            return ActionOutcome.failure("email sender is not configured")

        to = _recipients(render(config.get("to", "{{member.email}}"), data))
        if not to:
            return ActionOutcome.failure("no email recipients resolved")

        template = config.get("template")
        subject = _text(config.get("subject"), data)
        body = _text(config.get("body"), data)
        if not template and not (subject.strip() and body.strip()):
            return ActionOutcome.failure("email needs either template or subject and body")

        options: Dict[str, Any] = {}
        if template:
            options["template"] = template
            options["templateData"] = render(config.get("templateData") or {}, data)
        for key in ("fromName", "replyTo", "from"):
            if config.get(key):
                options[key] = render(config[key], data)
        for key in ("cc", "bcc"):
            copies = _recipients(render(config.get(key), data))
            if copies:
                options[key] = copies

        result = self._send(to, subject, body, options) or {}
        return _outcome(result, channel="email", recipients=to)


class WebhookHandler:
    """
    WEBHOOK: HTTP-запрос с JSON {"triggerData": ..., "payload": ...}.

    actionConfig: url (обязателен), method (POST), headers, payload
    """
    required = ("url",)

    def __init__(
        self,
        call: Optional[WebhookCallFunc],
        *,
        allowed_schemes: Iterable[str] = ("http", "https"),
    ) -> None:
        self._call = call
        self._schemes = {s.lower() for s in allowed_schemes}

    def check_url(self, url: Any) -> Optional[str]:
        """Вернёт текст ошибки или None."""
        if not isinstance(url, str) or not url.strip():
            return "url is required"
        parsed = urlparse(url.strip())
        if parsed.scheme.lower() not in self._schemes or not parsed.netloc:
            return f"unsupported webhook url {url!r}"
        return None

    def __call__(self, config: Dict[str, Any], data: Dict[str, Any]) -> ActionOutcome:
        if self._call is None:
            return ActionOutcome.failure("webhook invoker is not configured")

        url = render(config.get("url"), data)
        problem = self.check_url(url)
        if problem:
            return ActionOutcome.failure(problem)

        method = str(config.get("method") or "POST").upper()
        headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
        body = {
            "triggerData": data,
            "payload": render(config.get("payload") or {}, data),
        }

        result = self._call(method, url.strip(), body, headers) or {}
        return _outcome(result, url=url.strip(), method=method)


class TagMemberHandler:
    """
    TAG_MEMBER: навесить теги участнику.

    actionConfig: tags (список, обязателен), memberId ({{member.id}})
    """
    required = ("tags",)

    def __init__(self, tag: Optional[MemberTagFunc]) -> None:
        self._tag = tag

    def __call__(self, config: Dict[str, Any], data: Dict[str, Any]) -> ActionOutcome:
        if self._tag is None:
            return ActionOutcome.failure("member tagger is not configured")

        member_id = render(config.get("memberId", "{{member.id}}"), data)
        if member_id is None or not str(member_id).strip():
            return ActionOutcome.failure("member id could not be resolved")

        raw_tags = render(config.get("tags") or [], data)
        if not isinstance(raw_tags, list):
            raw_tags = [raw_tags]
        tags = [str(t).strip() for t in raw_tags if t is not None and str(t).strip()]
        if not tags:
            return ActionOutcome.failure("no tags to apply")

        result = self._tag(str(member_id), tags) or {}
        return _outcome(result, memberId=str(member_id), tags=tags)


# ============================================================================
# Реестр
# ============================================================================

class ActionRegistry:
    """
    actionType → обработчик. Заполняется один раз на старте процесса.
    """

    def __init__(self) -> None:
        self._handlers: Dict[ActionType, ActionHandler] = {}
        self._lock = threading.Lock()

    def register(self, action_type: ActionType, handler: ActionHandler) -> None:
        with self._lock:
            if action_type in self._handlers:
                raise ValueError(f"handler for {action_type.value} is already registered")
            self._handlers[action_type] = handler

    def resolve(self, action_type: ActionType) -> ActionHandler:
        with self._lock:
            handler = self._handlers.get(action_type)
        if handler is None:
            raise InternalConsistencyError(
                f"No handler registered for action type {action_type.value}"
            )
        return handler

    def has(self, action_type: ActionType) -> bool:
        with self._lock:
            return action_type in self._handlers

    def types(self) -> List[ActionType]:
        with self._lock:
            return list(self._handlers)


def build_default_registry(
    *,
    send_message: Optional[MessageSendFunc] = None,
    send_email: Optional[EmailSendFunc] = None,
    call_webhook: Optional[WebhookCallFunc] = None,
    tag_member: Optional[MemberTagFunc] = None,
    webhook_schemes: Iterable[str] = ("http", "https"),
) -> ActionRegistry:
    """Реестр со всеми встроенными обработчиками."""
    registry = ActionRegistry()
    registry.register(ActionType.SEND_MESSAGE, SendMessageHandler(send_message))
    registry.register(ActionType.SEND_EMAIL, SendEmailHandler(send_email))
    registry.register(
        ActionType.WEBHOOK,
        WebhookHandler(call_webhook, allowed_schemes=webhook_schemes),
    )
    registry.register(ActionType.TAG_MEMBER, TagMemberHandler(tag_member))
    return registry


# ============================================================================
# Диспетчер
# ============================================================================

class ActionDispatcher:
    """
    Вызывает обработчик по actionType.

    - неизвестный actionType → InternalConsistencyError (наружу, громко);
    - всё, что случилось внутри обработчика, → ActionOutcome с error;
    - каждый вызов ограничен timeout_s. По таймауту возвращаем отказ,
      а сам обработчик дорабатывает в фоне (поток не прерываем).
      Если обработчик ещё ждал свободного потока, его снимаем из очереди.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        *,
        timeout_s: float = 30.0,
        max_workers: int = 16,
    ) -> None:
        self._registry = registry
        self._timeout_s = timeout_s
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="automation-action",
        )

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

    def validate_config(self, action_type: ActionType, config: Dict[str, Any]) -> Dict[str, str]:
        """
        Лёгкая проверка actionConfig при создании правила:
        обязательные ключи и адрес webhook. Вернёт {путь: ошибка}.
        """
        if not self._registry.has(action_type):
            return {}
        handler = self._registry.resolve(action_type)
        errors: Dict[str, str] = {}
        for key in getattr(handler, "required", ()):
            val = config.get(key)
            if val is None or (isinstance(val, (str, list, dict)) and not val):
                errors[f"actionConfig.{key}"] = "is required"
        if isinstance(handler, WebhookHandler) and "actionConfig.url" not in errors:
            url = config.get("url")
            # с плейсхолдером адрес проверится уже при запуске
            if isinstance(url, str) and "{{" not in url:
                problem = handler.check_url(url)
                if problem:
                    errors["actionConfig.url"] = problem
        return errors

    def dispatch(
        self,
        action_type: ActionType,
        config: Dict[str, Any],
        data: Dict[str, Any],
    ) -> ActionOutcome:
        handler = self._registry.resolve(action_type)

        future: Future = self._pool.submit(self._run_handler, handler, action_type, config, data)
        try:
            return future.result(timeout=self._timeout_s)
        except FutureTimeoutError:
            if future.cancel():
                # все потоки заняты, до обработчика очередь не дошла: он и не запустится
                log.warning(
                    "action %s timed out after %ss waiting for a free worker, cancelled",
                    action_type.value,
                    self._timeout_s,
                )
                return ActionOutcome.failure(
                    f"action timed out after {self._timeout_s:g}s (not started)"
                )
            log.warning(
                "action %s timed out after %ss, left running in background",
                action_type.value,
                self._timeout_s,
            )
            future.add_done_callback(lambda f: self._log_late_result(action_type, f))
            return ActionOutcome.failure(f"action timed out after {self._timeout_s:g}s")

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    @staticmethod
    def _run_handler(
        handler: ActionHandler,
        action_type: ActionType,
        config: Dict[str, Any],
        data: Dict[str, Any],
    ) -> ActionOutcome:
        try:
            outcome = handler(dict(config), data)
        except Exception as exc:  # noqa: BLE001
            # тут мы не падаем, а возвращаем отказ
            log.warning("action %s raised: %s", action_type.value, exc)
            return ActionOutcome.failure(str(exc) or exc.__class__.__name__)

        if not isinstance(outcome, ActionOutcome):
            return ActionOutcome.failure(
                f"handler for {action_type.value} returned {type(outcome).__name__}"
            )
        return outcome

    @staticmethod
    def _log_late_result(action_type: ActionType, fut: Future) -> None:
        outcome = fut.result()
        if outcome.ok:
            log.info("late action %s finished ok: %s", action_type.value, outcome.summary)
        else:
            log.warning("late action %s failed: %s", action_type.value, outcome.error)
