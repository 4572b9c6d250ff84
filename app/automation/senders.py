# app/automation/senders.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import certifi
import requests

from app.automation.rules.errors import ActionDispatchError

log = logging.getLogger("automation.senders")

MAX_RECIPIENTS = 50
MAX_SUBJECT_LEN = 998


class SenderError(ActionDispatchError):
    """Отказ внешнего провайдера. code: как у API (TIMEOUT, REQUEST_ERROR, ...)."""

    def __init__(self, message: str, code: str = "UNKNOWN") -> None:
        super().__init__(message, {"code": code})
        self.provider_code = code


# ─────────────────────────────────────────────────────────────────────────────
# EKDSend: email + SMS одним API
# ─────────────────────────────────────────────────────────────────────────────
class EkdSendClient:
    """
    Клиент EKDSend (POST {api_url}/send, Bearer-ключ).

    Даёт две "возможности" для обработчиков действий:
      send_sms(to, body)                        → SEND_MESSAGE
      send_email(to, subject, body, options)    → SEND_EMAIL
    Ошибки: SenderError, ответ: {"messageId", "queuedAt"}.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        timeout: float = 30.0,
        from_email: str = "",
        from_name: str = "",
        sms_from: str = "",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.from_email = from_email
        self.from_name = from_name
        self.sms_from = sms_from
        self._http = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def send_sms(self, to: List[str], body: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": "sms", "to": to, "body": body}
        if self.sms_from:
            payload["from"] = self.sms_from
        return self._post(payload)

    def send_email(
        self,
        to: List[str],
        subject: str,
        body: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        options = dict(options or {})
        cc = list(options.get("cc") or [])
        bcc = list(options.get("bcc") or [])

        if len(to) + len(cc) + len(bcc) > MAX_RECIPIENTS:
            raise SenderError(
                f"Total recipients exceed maximum of {MAX_RECIPIENTS}",
                "VALIDATION_ERROR",
            )
        if len(subject) > MAX_SUBJECT_LEN:
            raise SenderError(
                f"Subject exceeds {MAX_SUBJECT_LEN} characters",
                "VALIDATION_ERROR",
            )

        payload: Dict[str, Any] = {"type": "email", "to": to}
        if options.get("template"):
            payload["template"] = options["template"]
            if options.get("templateData"):
                payload["templateData"] = options["templateData"]
        else:
            payload["subject"] = subject
            payload["body"] = body

        sender = options.get("from") or self.from_email
        sender_name = options.get("fromName") or self.from_name
        if sender:
            payload["from"] = sender
        if sender_name:
            payload["fromName"] = sender_name
        if cc:
            payload["cc"] = cc
        if bcc:
            payload["bcc"] = bcc
        if options.get("replyTo"):
            payload["replyTo"] = options["replyTo"]

        return self._post(payload)

    # ------------------------------------------------------------------
    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise SenderError("EKDSEND api key is not configured", "CONFIG_ERROR")

        try:
            r = self._http.post(
                f"{self.api_url}/send",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
                verify=certifi.where(),
            )
        except requests.exceptions.Timeout:
            raise SenderError("Request timed out", "TIMEOUT")
        except requests.exceptions.RequestException as e:
            raise SenderError(str(e), "REQUEST_ERROR")

        try:
            data = r.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if r.status_code in (200, 201, 202) and data.get("success"):
            return {
                "messageId": data.get("messageId"),
                "queuedAt": data.get("queuedAt"),
            }

        err = data.get("error") or {}
        msg = err.get("message") if isinstance(err, dict) else None
        code = err.get("code") if isinstance(err, dict) else None
        log.error("ekdsend HTTP %s: %s", r.status_code, (r.text or "")[:500])
        raise SenderError(msg or f"Unknown API error (HTTP {r.status_code})", code or "UNKNOWN")


# ─────────────────────────────────────────────────────────────────────────────
# Webhook
# ─────────────────────────────────────────────────────────────────────────────
class HttpWebhookInvoker:
    """
    Вызывает webhook: (method, url, json, headers) → {"statusCode": ...}.
    Не 2xx: SenderError.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self._http = session or requests.Session()

    def __call__(
        self,
        method: str,
        url: str,
        body: Dict[str, Any],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        try:
            r = self._http.request(
                method,
                url,
                json=body,
                headers=headers,
                timeout=self.timeout,
                verify=certifi.where(),
            )
        except requests.exceptions.Timeout:
            raise SenderError(f"webhook {url} timed out", "TIMEOUT")
        except requests.exceptions.RequestException as e:
            raise SenderError(f"webhook {url} failed: {e}", "REQUEST_ERROR")

        if not 200 <= r.status_code < 300:
            log.error("webhook HTTP %s from %s: %s", r.status_code, url, (r.text or "")[:500])
            raise SenderError(f"webhook returned HTTP {r.status_code}", "HTTP_ERROR")

        return {"statusCode": r.status_code}
