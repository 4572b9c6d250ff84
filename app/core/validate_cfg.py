# app/core/validate_cfg.py
from __future__ import annotations
from typing import Dict, Any, Optional

ALLOWED_WEBHOOK_SCHEMES = {"http", "https"}

def _as_int(v, name, min_: Optional[int] = None, max_: Optional[int] = None) -> int:
    if isinstance(v, bool):
        raise ValueError(f"{name}: expected an integer, got {v!r}")
    try:
        iv = int(v)
    except Exception:
        raise ValueError(f"{name}: expected an integer, got {v!r}")
    if min_ is not None and iv < min_:
        raise ValueError(f"{name}: must be >= {min_} (got {iv})")
    if max_ is not None and iv > max_:
        raise ValueError(f"{name}: must be <= {max_} (got {iv})")
    return iv

def _as_float(v, name, min_: Optional[float] = None) -> float:
    if isinstance(v, bool):
        raise ValueError(f"{name}: expected a number, got {v!r}")
    try:
        fv = float(v)
    except Exception:
        raise ValueError(f"{name}: expected a number, got {v!r}")
    if min_ is not None and fv < min_:
        raise ValueError(f"{name}: must be >= {min_} (got {fv})")
    return fv

def _as_bool(v, name) -> bool:
    if isinstance(v, bool):
        return v
    # допускаем 'true'/'false'/1/0 из yaml
    if isinstance(v, (int, float)) and v in (0, 1):
        return bool(v)
    if isinstance(v, str) and v.lower() in ("true", "false"):
        return v.lower() == "true"
    raise ValueError(f"{name}: must be true/false")

def _section(cfg: Dict[str, Any], name: str, prefix: str = "") -> Dict[str, Any]:
    sec = cfg.get(name, {})
    if sec is None:
        return {}
    if not isinstance(sec, dict):
        raise ValueError(f"{prefix}{name}: must be an object")
    return sec

def validate_cfg(cfg: Dict[str, Any]) -> None:
    """Бросает ValueError с понятным текстом, если конфиг некорректен."""
    if not isinstance(cfg, dict):
        raise ValueError("root YAML must be an object")

    # ─── db ───
    db = _section(cfg, "db")
    if "url" in db:
        url = str(db.get("url") or "").strip()
        if not url:
            raise ValueError("db.url: must not be empty (e.g. sqlite:///./data/automation.db)")

    # ─── automation ───
    au = _section(cfg, "automation")
    if "enabled" in au:
        _as_bool(au["enabled"], "automation.enabled")
    for key in ("page_size_default", "page_size_max", "log_limit_default", "log_limit_max"):
        if key in au:
            _as_int(au[key], f"automation.{key}", 1, 10000)
    if "page_size_default" in au and "page_size_max" in au:
        if int(au["page_size_default"]) > int(au["page_size_max"]):
            raise ValueError("automation.page_size_default: must not exceed page_size_max")
    if "log_limit_default" in au and "log_limit_max" in au:
        if int(au["log_limit_default"]) > int(au["log_limit_max"]):
            raise ValueError("automation.log_limit_default: must not exceed log_limit_max")
    if "action_timeout_s" in au:
        if _as_float(au["action_timeout_s"], "automation.action_timeout_s") <= 0:
            raise ValueError("automation.action_timeout_s: must be > 0")
    if "action_workers" in au:
        _as_int(au["action_workers"], "automation.action_workers", 1, 256)
    if "conditions_max_depth" in au:
        _as_int(au["conditions_max_depth"], "automation.conditions_max_depth", 1, 256)
    if au.get("rules_file") is not None and not isinstance(au["rules_file"], str):
        raise ValueError("automation.rules_file: must be a path string")

    # ─── senders ───
    senders = _section(cfg, "senders")
    ekd = _section(senders, "ekdsend", "senders.") if senders else {}
    if "api_url" in ekd:
        api_url = str(ekd.get("api_url") or "").strip()
        if not api_url.startswith(("http://", "https://")):
            raise ValueError("senders.ekdsend.api_url: must be an http(s) URL")
    wh = _section(senders, "webhook", "senders.") if senders else {}
    if "allowed_schemes" in wh:
        schemes = wh["allowed_schemes"]
        if not isinstance(schemes, list) or not schemes:
            raise ValueError("senders.webhook.allowed_schemes: must be a non-empty list")
        bad = [s for s in schemes if str(s).lower() not in ALLOWED_WEBHOOK_SCHEMES]
        if bad:
            raise ValueError(f"senders.webhook.allowed_schemes: unsupported {bad}")
