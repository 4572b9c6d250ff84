"""RuleEngine: CRUD правил, запуск и журнал."""
import threading
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from app.automation.rules.actions import ActionDispatcher, ActionRegistry, SendEmailHandler
from app.automation.rules.engine import RuleEngine
from app.automation.rules.errors import (
    AutomationDisabledError,
    InternalConsistencyError,
    NotFoundError,
    RuleInactiveError,
    ValidationError,
)
from app.automation.rules.types import ActionOutcome, ActionType, ExecutionStatus, TriggerType


# ---------------------------------------------------------------------------
# Создание и валидация
# ---------------------------------------------------------------------------

class TestCreateRule:
    def test_create(self, engine, make_rule):
        rule = make_rule(triggerType="member_created", description="hello")
        assert rule.id
        assert rule.trigger_type is TriggerType.MEMBER_CREATED
        assert rule.action_type is ActionType.SEND_EMAIL
        assert rule.created_by == "user-1"
        assert rule.is_active is True
        assert rule.conditions is None
        assert rule.stats.run_count == 0
        assert engine.get_rule(rule.id).to_dict() == rule.to_dict()

    def test_required_fields(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.create_rule({}, "user-1")
        assert set(exc_info.value.details) == {"name", "triggerType", "actionType"}

    def test_errors_are_collected_by_field(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.create_rule(
                {
                    "name": "   ",
                    "triggerType": "NOPE",
                    "actionType": "SEND_EMAIL",
                    "isActive": "yes",
                    "color": "red",
                    "conditions": {"and": [{"field": "a", "op": "between", "value": 1}]},
                },
                "user-1",
            )
        details = exc_info.value.details
        assert set(details) == {"name", "triggerType", "isActive", "color", "conditions.and[0].op"}
        assert details["color"] == "unknown field"

    def test_rejected_rule_is_not_stored(self, engine):
        with pytest.raises(ValidationError):
            engine.create_rule({"name": "x", "triggerType": "MANUAL", "actionType": "FAX"}, "user-1")
        assert engine.list_rules().total == 0

    def test_name_length(self, make_rule):
        with pytest.raises(ValidationError) as exc_info:
            make_rule(name="x" * 256)
        assert "name" in exc_info.value.details

    def test_created_by_required(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.create_rule({"name": "x", "triggerType": "MANUAL", "actionType": "WEBHOOK"}, "")
        assert exc_info.value.details == {"createdBy": "is required"}

    def test_action_config_is_checked(self, make_rule):
        with pytest.raises(ValidationError) as exc_info:
            make_rule(actionType="SEND_MESSAGE", actionConfig={})
        assert exc_info.value.details == {"actionConfig.body": "is required"}

    def test_readonly_fields_are_ignored(self, make_rule):
        rule = make_rule(id="mine", runCount=99, createdBy="someone-else")
        assert rule.id != "mine"
        assert rule.stats.run_count == 0
        assert rule.created_by == "user-1"

    def test_empty_conditions_mean_none(self, make_rule):
        assert make_rule(conditions={}).conditions is None


# ---------------------------------------------------------------------------
# Список, чтение, обновление, удаление
# ---------------------------------------------------------------------------

class TestListRules:
    def test_pagination_newest_first(self, engine, make_rule):
        first = make_rule(name="first")
        second = make_rule(name="second")
        third = make_rule(name="third")

        page1 = engine.list_rules(page=1, limit=2)
        assert [r.id for r in page1.items] == [third.id, second.id]
        assert (page1.total, page1.page, page1.limit) == (3, 1, 2)

        page2 = engine.list_rules(page=2, limit=2)
        assert [r.id for r in page2.items] == [first.id]

    def test_filter_active(self, engine, make_rule):
        make_rule(name="on")
        off = make_rule(name="off", isActive=False)
        result = engine.list_rules(is_active=False)
        assert [r.id for r in result.items] == [off.id]
        assert result.total == 1

    @pytest.mark.parametrize("limit,expected", [(None, 20), (0, 20), (-3, 20), (5, 5), (1000, 100)])
    def test_limit_is_clamped(self, engine, limit, expected):
        assert engine.list_rules(limit=limit).limit == expected

    def test_bad_page_falls_back_to_first(self, engine):
        assert engine.list_rules(page=0).page == 1


class TestUpdateDelete:
    def test_partial_update(self, engine, make_rule):
        rule = make_rule(description="old", conditions={"field": "member.age", "op": "gt", "value": 1})
        updated = engine.update_rule(rule.id, {"name": "Renamed"})
        assert updated.name == "Renamed"
        assert updated.description == "old"
        assert updated.conditions == rule.conditions
        assert updated.action_config == rule.action_config
        assert updated.created_at == rule.created_at
        assert updated.updated_at >= rule.updated_at

    def test_clear_conditions(self, engine, make_rule):
        rule = make_rule(conditions={"field": "member.age", "op": "gt", "value": 1})
        assert engine.update_rule(rule.id, {"conditions": None}).conditions is None

    def test_invalid_update_leaves_rule_unchanged(self, engine, make_rule):
        rule = make_rule()
        with pytest.raises(ValidationError):
            engine.update_rule(rule.id, {"name": "ok", "actionType": "WEBHOOK"})
        assert engine.get_rule(rule.id).name == "Welcome"

    def test_update_missing(self, engine):
        with pytest.raises(NotFoundError):
            engine.update_rule("nope", {"name": "x"})

    def test_delete_keeps_logs(self, engine, make_rule, member_data):
        rule = make_rule()
        engine.execute(rule.id, member_data)
        engine.delete_rule(rule.id)

        with pytest.raises(NotFoundError):
            engine.get_rule(rule.id)
        logs = engine.list_logs(rule_id=rule.id)
        assert len(logs) == 1
        assert logs[0].rule_name == "Welcome"

    def test_delete_missing(self, engine):
        with pytest.raises(NotFoundError):
            engine.delete_rule("nope")


# ---------------------------------------------------------------------------
# Запуск
# ---------------------------------------------------------------------------

class TestExecute:
    def test_success_without_conditions(self, engine, make_rule, outbox, member_data):
        rule = make_rule()
        entry = engine.execute(rule.id, member_data)

        assert entry.status is ExecutionStatus.SUCCESS
        assert entry.condition_result is None
        assert entry.rule_id == rule.id
        assert entry.rule_name == "Welcome"
        assert entry.trigger_data == member_data
        assert entry.action_result["messageId"] == "email-1"
        assert entry.error_message is None
        assert entry.duration_ms >= 0
        assert outbox.emails[0][1] == "Hi Ann"
        assert engine.list_logs() == [entry]

    def test_conditions_true(self, engine, make_rule, member_data):
        rule = make_rule(conditions={"field": "member.age", "op": "gte", "value": 18})
        entry = engine.execute(rule.id, member_data)
        assert entry.status is ExecutionStatus.SUCCESS
        assert entry.condition_result is True

    def test_conditions_false_skip_action(self, engine, make_rule, outbox, member_data):
        rule = make_rule(conditions={"field": "member.age", "op": "lt", "value": 18})
        entry = engine.execute(rule.id, member_data)
        assert entry.status is ExecutionStatus.SKIPPED
        assert entry.condition_result is False
        assert entry.action_result is None
        assert outbox.emails == []

    def test_action_failure_is_logged(self, engine, make_rule):
        rule = make_rule()
        entry = engine.execute(rule.id, {"member": {"firstName": "NoEmail"}})
        assert entry.status is ExecutionStatus.FAILED
        assert entry.error_message == "no email recipients resolved"
        assert entry.action_result is None

    def test_condition_error(self, repo, dispatcher, outbox, member_data):
        evaluator = MagicMock()
        evaluator.evaluate_payload.side_effect = RuntimeError("boom")
        engine = RuleEngine(rules_repo=repo, dispatcher=dispatcher, evaluator=evaluator)
        rule = engine.create_rule(
            {"name": "r", "triggerType": "MANUAL", "actionType": "SEND_EMAIL",
             "actionConfig": {"subject": "s", "body": "b"}},
            "user-1",
        )
        entry = engine.execute(rule.id, member_data)
        assert entry.status is ExecutionStatus.ERROR
        assert entry.condition_result is None
        assert "boom" in entry.error_message
        assert outbox.emails == []

    def test_corrupted_stored_conditions(self, engine, make_rule, repo, outbox, member_data):
        rule = make_rule()
        # в обход валидации, как будто запись испортили в хранилище
        rule.conditions = {"field": "member.age", "op": "between", "value": 1}
        repo.update_rule(rule)

        entry = engine.execute(rule.id, member_data)
        assert entry.status is ExecutionStatus.ERROR
        assert "conditions.op" in entry.error_message
        assert outbox.emails == []
        assert engine.get_rule(rule.id).stats.failure_count == 1

    def test_missing_rule(self, engine):
        with pytest.raises(NotFoundError):
            engine.execute("nope", {})
        assert engine.list_logs() == []

    def test_inactive_rule(self, engine, make_rule):
        rule = make_rule(isActive=False)
        with pytest.raises(RuleInactiveError):
            engine.execute(rule.id, {})
        assert engine.list_logs() == []

    def test_disabled_feature(self, repo, dispatcher, member_data):
        flag = {"on": False}
        engine = RuleEngine(rules_repo=repo, dispatcher=dispatcher, enabled=lambda: flag["on"])
        rule = engine.create_rule(
            {"name": "r", "triggerType": "MANUAL", "actionType": "SEND_EMAIL",
             "actionConfig": {"subject": "s", "body": "b"}},
            "user-1",
        )
        with pytest.raises(AutomationDisabledError):
            engine.execute(rule.id, member_data)
        assert engine.list_logs() == []

        # CRUD при этом работает, а флаг читается на каждый запуск
        flag["on"] = True
        assert engine.execute(rule.id, member_data).status is ExecutionStatus.SUCCESS

    def test_unregistered_handler(self, repo, outbox, member_data):
        registry = ActionRegistry()
        registry.register(ActionType.SEND_EMAIL, SendEmailHandler(outbox.send_email))
        dispatcher = ActionDispatcher(registry, timeout_s=1.0, max_workers=1)
        try:
            engine = RuleEngine(rules_repo=repo, dispatcher=dispatcher)
            rule = engine.create_rule(
                {"name": "r", "triggerType": "MANUAL", "actionType": "TAG_MEMBER",
                 "actionConfig": {"tags": ["x"]}},
                "user-1",
            )
            with pytest.raises(InternalConsistencyError):
                engine.execute(rule.id, member_data)
            assert engine.list_logs() == []
        finally:
            dispatcher.shutdown()

    def test_trigger_data_is_a_snapshot(self, engine, make_rule, member_data):
        rule = make_rule()
        when = datetime(2024, 5, 1, 12, 0)
        member_data["at"] = when
        entry = engine.execute(rule.id, member_data)

        member_data["member"]["firstName"] = "Changed"
        assert entry.trigger_data["member"]["firstName"] == "Ann"
        assert entry.trigger_data["at"] == str(when)

    def test_empty_trigger_data(self, engine, make_rule):
        rule = make_rule(actionConfig={"to": "a@example.com", "subject": "s", "body": "b"})
        entry = engine.execute(rule.id)
        assert entry.trigger_data == {}
        assert entry.status is ExecutionStatus.SUCCESS

    def test_run_stats(self, engine, make_rule, member_data):
        rule = make_rule(conditions={"field": "member.age", "op": "gt", "value": 18})
        engine.execute(rule.id, member_data)                       # SUCCESS
        engine.execute(rule.id, {"member": {"age": 5}})            # SKIPPED
        engine.execute(rule.id, {"member": {"age": 40}})           # FAILED, нет email

        stats = engine.get_rule(rule.id).stats
        assert (stats.run_count, stats.success_count, stats.failure_count) == (3, 1, 1)
        assert stats.last_run_at is not None

    def test_stats_failure_does_not_break_execute(self, engine, make_rule, repo, member_data, monkeypatch):
        rule = make_rule()
        monkeypatch.setattr(repo, "record_run", MagicMock(side_effect=RuntimeError("db locked")))
        entry = engine.execute(rule.id, member_data)
        assert entry.status is ExecutionStatus.SUCCESS
        assert len(engine.list_logs()) == 1

    def test_dispatch_fault_is_logged_as_failed(self, engine, make_rule, member_data):
        rule = make_rule()
        # пул действий уже остановлен, новые задачи не принимаются
        engine.dispatcher.shutdown()
        entry = engine.execute(rule.id, member_data)
        assert entry.status is ExecutionStatus.FAILED
        assert entry.error_message.startswith("Action dispatch failed:")
        assert [e.id for e in engine.list_logs()] == [entry.id]
        assert engine.get_rule(rule.id).stats.failure_count == 1

    def test_unserializable_action_result_is_logged_as_failed(self, repo, member_data):
        summary = {}
        summary["self"] = summary
        registry = ActionRegistry()
        registry.register(ActionType.SEND_EMAIL, lambda cfg, data: ActionOutcome(summary=summary))
        d = ActionDispatcher(registry, timeout_s=2.0, max_workers=1)
        engine = RuleEngine(rules_repo=repo, dispatcher=d)
        try:
            rule = engine.create_rule(
                {"name": "Loop", "triggerType": "MEMBER_CREATED", "actionType": "SEND_EMAIL"},
                "user-1",
            )
            entry = engine.execute(rule.id, member_data)
        finally:
            d.shutdown()
        assert entry.status is ExecutionStatus.FAILED
        assert entry.action_result is None
        assert entry.error_message.startswith("Action result is not serializable:")
        assert len(engine.list_logs()) == 1

    def test_concurrent_executions_each_logged(self, engine, make_rule, member_data):
        rule = make_rule()
        n = 20
        results = []
        errors = []

        def run():
            try:
                results.append(engine.execute(rule.id, member_data))
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=run) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({e.id for e in results}) == n
        assert len(engine.list_logs(limit=200)) == n
        assert engine.get_rule(rule.id).stats.run_count == n


class TestListLogs:
    def test_newest_first_and_filter(self, engine, make_rule, member_data):
        a = make_rule(name="a")
        b = make_rule(name="b")
        e1 = engine.execute(a.id, member_data)
        e2 = engine.execute(b.id, member_data)
        e3 = engine.execute(a.id, member_data)

        assert [e.id for e in engine.list_logs()] == [e3.id, e2.id, e1.id]
        assert [e.id for e in engine.list_logs(rule_id=a.id)] == [e3.id, e1.id]
        assert [e.id for e in engine.list_logs(limit=1)] == [e3.id]
        assert engine.list_logs(rule_id="unknown") == []

    def test_limit_is_clamped(self, repo, dispatcher):
        repo_spy = MagicMock(wraps=repo)
        engine = RuleEngine(rules_repo=repo_spy, dispatcher=dispatcher)
        engine.list_logs(limit=0)
        engine.list_logs(limit=10_000)
        calls = [c.kwargs["limit"] for c in repo_spy.list_recent_execution_logs.call_args_list]
        assert calls == [50, 200]
