# automation/rules/__init__.py
"""
Движок правил автоматизации.

Состав:
  - types.py           → теги, дерево условий, правило, запись журнала
  - errors.py          → ошибки (у каждой свой HTTP-статус и код)
  - conditions.py      → разбор и проверка JSON дерева условий
  - evaluator.py       → вычисление условий над trigger data
  - templating.py      → подстановка {{path}} в конфиги действий
  - actions.py         → обработчики действий, реестр, диспетчер
  - storage.py         → интерфейсы хранилищ
  - repositories.py    → in-memory реализации
  - sql_repositories.py → реализации на SQLAlchemy
  - engine.py          → основной движок
"""
from .engine import RuleEngine
from .actions import ActionDispatcher, ActionRegistry, build_default_registry
from .evaluator import ConditionEvaluator
from .storage import RulesRepository

__all__ = [
    "RuleEngine",
    "ActionDispatcher",
    "ActionRegistry",
    "build_default_registry",
    "ConditionEvaluator",
    "RulesRepository",
]
