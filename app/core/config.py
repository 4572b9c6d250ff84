# app/core/config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings

from app.core.validate_cfg import validate_cfg

# дефолты секции automation (их же видно в config.example.yaml)
AUTOMATION_DEFAULTS: Dict[str, Any] = {
    "enabled": True,
    "page_size_default": 20,
    "page_size_max": 100,
    "log_limit_default": 50,
    "log_limit_max": 200,
    "action_timeout_s": 30.0,
    "action_workers": 16,
    "conditions_max_depth": 32,
    "rules_file": None,
    "seed_user": "system",
}

EKDSEND_DEFAULTS: Dict[str, Any] = {
    "api_url": "https://es.ekddigital.com/api/v1",
    "api_key": "",
    "from_email": "no-reply@caresphere.ekddigital.com",
    "from_name": "CareSphere",
    "sms_from": "",
}


class Settings(BaseSettings):
    # секрет для cookie-сессий
    session_secret: str = Field(default="change-me-please", validation_alias="SESSION_SECRET")

    # путь к основному YAML (можно переопределить переменной окружения CONFIG_FILE)
    config_file: str = Field(default="config.yaml", validation_alias="CONFIG_FILE")

    # ключ EKDSend лучше держать в окружении, а не в YAML
    ekdsend_api_key: str = Field(default="", validation_alias="EKDSEND_API_KEY")

    # внутреннее хранилище загруженного YAML
    _cfg: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _config_path: Path | None = PrivateAttr(default=None)

    # ───────── пути ─────────
    @property
    def config_path(self) -> Path:
        if self._config_path is None:
            p = Path(self.config_file)
            if not p.is_absolute():
                p = Path.cwd() / p
            self._config_path = p
        return self._config_path

    # ───────── YAML cfg ─────────
    @property
    def cfg(self) -> Dict[str, Any]:
        return self._cfg

    def get_cfg(self) -> Dict[str, Any]:
        return self._cfg

    def set_cfg(self, data: Dict[str, Any]) -> None:
        """Подменить конфиг целиком (тесты, горячая перезагрузка). Проверяется так же."""
        data = data or {}
        validate_cfg(data)
        self._cfg = data

    def load_yaml_config(self) -> None:
        p = self.config_path
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            validate_cfg(data)  # выбросит ValueError, если что-то не так
            self._cfg = data
        else:
            self._cfg = {}

    # ───────── удобные секции ─────────
    @property
    def automation(self) -> Dict[str, Any]:
        merged = dict(AUTOMATION_DEFAULTS)
        merged.update(self._cfg.get("automation") or {})
        return merged

    @property
    def ekdsend(self) -> Dict[str, Any]:
        merged = dict(EKDSEND_DEFAULTS)
        merged.update((self._cfg.get("senders") or {}).get("ekdsend") or {})
        if self.ekdsend_api_key:
            merged["api_key"] = self.ekdsend_api_key
        return merged

    @property
    def webhook_schemes(self) -> List[str]:
        wh = (self._cfg.get("senders") or {}).get("webhook") or {}
        return list(wh.get("allowed_schemes") or ["http", "https"])

    @property
    def automation_enabled(self) -> bool:
        v = self.automation["enabled"]
        # в YAML могли написать "false" строкой
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return bool(v)

    @property
    def rules_file(self) -> Optional[str]:
        return self.automation.get("rules_file") or None

    @property
    def db_url(self) -> str:
        return (self._cfg.get("db") or {}).get("url", "sqlite:///./data/automation.db")


settings = Settings()
