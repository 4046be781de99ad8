"""
ChatFlow settings: dataclass sections filled from a YAML file.

``${VAR}`` references in string values are resolved from the environment.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./chatflow.db"              # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class SchedulerConfig:
    job_store_backend: str = "memory"   # "memory" | "file" | "sql" | "redis"
    job_store_file_dir: str = "./data"
    redis_url: str = "redis://localhost:6379"
    pool_size: int = 10                 # max concurrently executing jobs
    sweep_interval_seconds: int = 10
    stuck_timeout_minutes: int = 60
    reaper_interval_seconds: int = 1800
    retention_days: int = 7
    retention_interval_seconds: int = 86400


@dataclass
class PipelineConfig:
    ticket_delay_seconds: float = 5
    kpi_delay_seconds: float = 10
    flag_delay_seconds: float = 20
    default_alert_delay_minutes: int = 30
    flag_sweep_interval_seconds: int = 3600
    flag_sweep_page_size: int = 500
    overdue_sweep_interval_seconds: int = 300
    overdue_threshold_minutes: int = 15
    escalation_alert_count: int = 3
    auto_close_interval_seconds: int = 3600
    first_response_cap_minutes: int = 2880


@dataclass
class WorkingHoursConfig:
    start: str = "09:00"
    end: str = "18:00"
    workdays: list[int] = field(default_factory=lambda: [0, 1, 2, 3, 4])   # Monday=0


@dataclass
class DeliveryConfig:
    whatsapp_url: str = ""
    interceptor_url: str = ""
    token: str = ""
    timeout_seconds: float = 30.0


@dataclass
class NotificationConfig:
    webhook_url: str = ""
    token: str = ""


@dataclass
class TenantConfig:
    alert_delay_minutes: Optional[int] = None
    auto_close_hours: Optional[int] = None
    timezone: str = ""                                 # empty: inherit Settings.timezone
    whatsapp_business: bool = False
    agents: dict[str, str] = field(default_factory=dict)   # roster name → user id


@dataclass
class Settings:
    app_name: str = "ChatFlow"
    debug: bool = False
    timezone: str = "America/Lima"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    working_hours: WorkingHoursConfig = field(default_factory=WorkingHoursConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    tenants: dict[str, TenantConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")

# top-level YAML key -> dataclass for that section
_SECTIONS: dict[str, type] = {
    "database": DatabaseConfig,
    "scheduler": SchedulerConfig,
    "pipeline": PipelineConfig,
    "working_hours": WorkingHoursConfig,
    "delivery": DeliveryConfig,
    "notifications": NotificationConfig,
}


def _expand_env(node: Any) -> Any:
    """Resolve ``${NAME}`` references in every string; unset names are left as written."""
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), node)
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    return node


def _build(cls, raw: Optional[dict[str, Any]]):
    """Instantiate ``cls`` from the keys it declares; others are dropped."""
    return cls(**{k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__})


def _default_path() -> Path:
    return Path(os.environ.get("CHATFLOW_CONFIG") or Path(__file__).parent / "settings.yaml")


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Read ``config_path`` (``$CHATFLOW_CONFIG`` or the bundled file) and cache the result.

    A missing file yields the dataclass defaults.
    """
    global _settings
    path = Path(config_path) if config_path else _default_path()
    raw: dict[str, Any] = {}
    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})

    settings = _build(Settings, {k: v for k, v in raw.items() if k not in _SECTIONS and k != "tenants"})
    for key, cls in _SECTIONS.items():
        if key in raw:
            setattr(settings, key, _build(cls, raw[key]))
    for tenant_id, block in (raw.get("tenants") or {}).items():
        tenant = _build(TenantConfig, block)
        tenant.timezone = tenant.timezone or settings.timezone
        settings.tenants[str(tenant_id)] = tenant

    _settings = settings
    return settings


def get_settings() -> Settings:
    if _settings is None:
        return load_settings()
    return _settings
