"""Общие фикстуры: движок на in-memory хранилищах и «почтовый ящик» вместо отправителей."""
from typing import Any, Dict, List

import pytest

from app.automation.rules.actions import ActionDispatcher, build_default_registry
from app.automation.rules.engine import RuleEngine
from app.automation.rules.repositories import InMemoryExecutionLogStorage, InMemoryRuleStorage
from app.automation.rules.storage import RulesRepository
from app.db.session import init_db, make_engine, make_session_factory


MEMBER_DATA: Dict[str, Any] = {
    "member": {
        "id": "m-1",
        "firstName": "Ann",
        "email": "ann@example.com",
        "phone": "+15550001",
        "age": 30,
        "status": "ACTIVE",
        "joinedAt": "2021-03-15T10:00:00Z",
        "tags": ["vip", "choir"],
        "nickname": None,
    }
}


class Outbox:
    """Записывает вызовы отправителей вместо реальной отправки."""

    def __init__(self) -> None:
        self.sms: List[tuple] = []
        self.emails: List[tuple] = []
        self.webhooks: List[tuple] = []
        self.tags: List[tuple] = []

    def send_sms(self, to, body):
        self.sms.append((to, body))
        return {"messageId": f"sms-{len(self.sms)}"}

    def send_email(self, to, subject, body, options):
        self.emails.append((to, subject, body, options))
        return {"messageId": f"email-{len(self.emails)}"}

    def call_webhook(self, method, url, body, headers):
        self.webhooks.append((method, url, body, headers))
        return {"statusCode": 200}

    def tag_member(self, member_id, tags):
        self.tags.append((member_id, tags))
        return {"applied": len(tags)}


@pytest.fixture
def member_data():
    return {"member": dict(MEMBER_DATA["member"])}


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def registry(outbox):
    return build_default_registry(
        send_message=outbox.send_sms,
        send_email=outbox.send_email,
        call_webhook=outbox.call_webhook,
        tag_member=outbox.tag_member,
    )


@pytest.fixture
def dispatcher(registry):
    d = ActionDispatcher(registry, timeout_s=2.0, max_workers=8)
    yield d
    d.shutdown()


@pytest.fixture
def repo():
    return RulesRepository(InMemoryRuleStorage(), InMemoryExecutionLogStorage())


@pytest.fixture
def engine(repo, dispatcher):
    return RuleEngine(rules_repo=repo, dispatcher=dispatcher)


@pytest.fixture
def make_rule(engine):
    """Создать правило через движок: по умолчанию приветственное письмо."""

    def _make(**overrides):
        definition = {
            "name": "Welcome",
            "triggerType": "MEMBER_CREATED",
            "actionType": "SEND_EMAIL",
            "actionConfig": {"subject": "Hi {{member.firstName}}", "body": "Welcome!"},
        }
        definition.update(overrides)
        return engine.create_rule(definition, "user-1")

    return _make


@pytest.fixture
def sql_session_factory(tmp_path):
    db_engine = make_engine(f"sqlite:///{tmp_path / 'automation.db'}")
    init_db(db_engine)
    yield make_session_factory(db_engine)
    db_engine.dispose()
