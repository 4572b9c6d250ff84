# app/automation/__init__.py
"""
Автоматизация: правила «событие → условия → действие».

  - rules/         → движок, условия, действия, хранилища
  - senders.py     → клиенты EKDSend (email/SMS) и webhook
  - runtime.py     → сборка движка по settings, синглтон процесса
  - rules_loader.py → загрузка правил из YAML
  - api/           → HTTP-роуты /api/automation
"""
