# app/automation/api/__init__.py
