"""Клиенты EKDSend и webhook с подменённой requests.Session."""
from unittest.mock import MagicMock

import pytest
import requests

from app.automation.senders import EkdSendClient, HttpWebhookInvoker, SenderError


def _response(status_code=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    if payload is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    return resp


def _client(session, **kwargs):
    params = dict(
        api_url="https://api.example.com/v1/",
        api_key="secret",
        timeout=5.0,
        from_email="no-reply@example.com",
        from_name="Example",
        session=session,
    )
    params.update(kwargs)
    return EkdSendClient(**params)


class TestEkdSendClient:
    def test_send_email(self):
        session = MagicMock()
        session.post.return_value = _response(
            202, {"success": True, "messageId": "msg-1", "queuedAt": "2024-05-01T00:00:00Z"}
        )
        result = _client(session).send_email(["a@example.com"], "Hi", "Body", {"replyTo": "r@example.com"})

        assert result == {"messageId": "msg-1", "queuedAt": "2024-05-01T00:00:00Z"}
        args, kwargs = session.post.call_args
        assert args[0] == "https://api.example.com/v1/send"
        assert kwargs["headers"] == {"Authorization": "Bearer secret"}
        assert kwargs["timeout"] == 5.0
        assert kwargs["json"] == {
            "type": "email",
            "to": ["a@example.com"],
            "subject": "Hi",
            "body": "Body",
            "from": "no-reply@example.com",
            "fromName": "Example",
            "replyTo": "r@example.com",
        }

    def test_template_replaces_subject_and_body(self):
        session = MagicMock()
        session.post.return_value = _response(200, {"success": True, "messageId": "m"})
        _client(session).send_email(["a@example.com"], "", "", {"template": "welcome", "templateData": {"x": 1}})
        payload = session.post.call_args.kwargs["json"]
        assert payload["template"] == "welcome"
        assert payload["templateData"] == {"x": 1}
        assert "subject" not in payload

    def test_cc_bcc_count_towards_recipient_limit(self):
        session = MagicMock()
        session.post.return_value = _response(200, {"success": True, "messageId": "m"})
        client = _client(session)
        client.send_email(["a@example.com"], "Hi", "Body", {"cc": ["c@example.com"], "bcc": ["b@example.com"]})
        payload = session.post.call_args.kwargs["json"]
        assert payload["cc"] == ["c@example.com"]
        assert payload["bcc"] == ["b@example.com"]

        with pytest.raises(SenderError) as exc_info:
            client.send_email(["a@example.com"], "Hi", "Body", {"bcc": [f"b{i}@example.com" for i in range(50)]})
        assert exc_info.value.provider_code == "VALIDATION_ERROR"
        assert session.post.call_count == 1

    def test_send_sms(self):
        session = MagicMock()
        session.post.return_value = _response(200, {"success": True, "messageId": "s"})
        _client(session, sms_from="Church").send_sms(["+1"], "hello")
        assert session.post.call_args.kwargs["json"] == {
            "type": "sms", "to": ["+1"], "body": "hello", "from": "Church",
        }

    def test_api_error(self):
        session = MagicMock()
        session.post.return_value = _response(
            400, {"success": False, "error": {"code": "INVALID_EMAIL", "message": "bad address"}}
        )
        with pytest.raises(SenderError) as exc_info:
            _client(session).send_email(["x"], "Hi", "Body")
        assert exc_info.value.provider_code == "INVALID_EMAIL"
        assert exc_info.value.message == "bad address"

    def test_non_json_error(self):
        session = MagicMock()
        session.post.return_value = _response(502, None, "Bad Gateway")
        with pytest.raises(SenderError) as exc_info:
            _client(session).send_sms(["+1"], "x")
        assert exc_info.value.provider_code == "UNKNOWN"
        assert "HTTP 502" in exc_info.value.message

    @pytest.mark.parametrize("exc,code", [
        (requests.exceptions.Timeout("slow"), "TIMEOUT"),
        (requests.exceptions.ConnectionError("refused"), "REQUEST_ERROR"),
    ])
    def test_transport_errors(self, exc, code):
        session = MagicMock()
        session.post.side_effect = exc
        with pytest.raises(SenderError) as exc_info:
            _client(session).send_sms(["+1"], "x")
        assert exc_info.value.provider_code == code

    def test_not_configured(self):
        session = MagicMock()
        client = _client(session, api_key="")
        assert not client.configured
        with pytest.raises(SenderError) as exc_info:
            client.send_sms(["+1"], "x")
        assert exc_info.value.provider_code == "CONFIG_ERROR"
        session.post.assert_not_called()

    def test_local_limits(self):
        session = MagicMock()
        client = _client(session)
        with pytest.raises(SenderError):
            client.send_email([f"u{i}@example.com" for i in range(51)], "Hi", "Body")
        with pytest.raises(SenderError):
            client.send_email(["a@example.com"], "x" * 999, "Body")
        session.post.assert_not_called()


class TestHttpWebhookInvoker:
    def test_success(self):
        session = MagicMock()
        session.request.return_value = _response(204)
        invoker = HttpWebhookInvoker(timeout=3.0, session=session)
        result = invoker("PUT", "https://hooks.example.com/x", {"a": 1}, {"X-Token": "t"})

        assert result == {"statusCode": 204}
        args, kwargs = session.request.call_args
        assert args == ("PUT", "https://hooks.example.com/x")
        assert kwargs["json"] == {"a": 1}
        assert kwargs["headers"] == {"X-Token": "t"}

    def test_http_error(self):
        session = MagicMock()
        session.request.return_value = _response(500, None, "oops")
        with pytest.raises(SenderError) as exc_info:
            HttpWebhookInvoker(session=session)("POST", "https://hooks.example.com/x", {}, {})
        assert exc_info.value.provider_code == "HTTP_ERROR"

    def test_timeout(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.Timeout()
        with pytest.raises(SenderError) as exc_info:
            HttpWebhookInvoker(session=session)("POST", "https://hooks.example.com/x", {}, {})
        assert exc_info.value.provider_code == "TIMEOUT"
