"""
Tenant directory: per-tenant settings and agent rosters.

Built once at startup from the ``tenants`` section of settings.yaml and
frozen into read-only mappings, so a roster change is a config change,
not a code change.

Usage:
    tenants = TenantDirectory.from_settings(get_settings())
    tenants.get_alert_delay_minutes("acme")        # → 20
    tenants.resolve_agent("acme", "Maria Lopez")   # → "a1b2c3d4e5f60718"
"""
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

import structlog

from config.settings import Settings

logger = structlog.get_logger()

DEFAULT_ALERT_DELAY_MINUTES = 30
DEFAULT_TIMEZONE = "America/Lima"


def _roster_key(name: str) -> str:
    return " ".join(name.split()).casefold()


@dataclass(frozen=True)
class TenantProfile:
    tenant_id: str
    alert_delay_minutes: Optional[int] = None
    auto_close_hours: Optional[int] = None
    timezone: str = DEFAULT_TIMEZONE
    whatsapp_business: bool = False
    agent_roster: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


class TenantDirectory:
    """Immutable lookup of tenant settings; unknown tenants get defaults."""

    def __init__(
        self,
        profiles: Iterable[TenantProfile] = (),
        default_alert_delay_minutes: int = DEFAULT_ALERT_DELAY_MINUTES,
        default_timezone: str = DEFAULT_TIMEZONE,
    ):
        self._profiles: Mapping[str, TenantProfile] = MappingProxyType(
            {p.tenant_id: p for p in profiles}
        )
        self._default_alert_delay = default_alert_delay_minutes
        self._default_timezone = default_timezone

    @classmethod
    def from_settings(cls, settings: Settings) -> TenantDirectory:
        profiles = []
        for tenant_id, cfg in settings.tenants.items():
            roster = MappingProxyType({
                _roster_key(name): str(user_id) for name, user_id in cfg.agents.items()
            })
            profiles.append(TenantProfile(
                tenant_id=tenant_id,
                alert_delay_minutes=cfg.alert_delay_minutes,
                auto_close_hours=cfg.auto_close_hours,
                timezone=cfg.timezone or settings.timezone,
                whatsapp_business=cfg.whatsapp_business,
                agent_roster=roster,
            ))
        directory = cls(
            profiles,
            default_alert_delay_minutes=settings.pipeline.default_alert_delay_minutes,
            default_timezone=settings.timezone,
        )
        logger.info("tenant_directory_loaded", tenants=len(profiles))
        return directory

    def profile(self, tenant_id: str) -> TenantProfile:
        found = self._profiles.get(tenant_id)
        if found is not None:
            return found
        return TenantProfile(tenant_id=tenant_id, timezone=self._default_timezone)

    def profiles(self) -> list[TenantProfile]:
        return list(self._profiles.values())

    def tenant_ids(self) -> list[str]:
        return list(self._profiles.keys())

    def get_alert_delay_minutes(self, tenant_id: str, default: Optional[int] = None) -> int:
        configured = self.profile(tenant_id).alert_delay_minutes
        if configured is not None:
            return configured
        return default if default is not None else self._default_alert_delay

    def get_auto_close_hours(self, tenant_id: str) -> Optional[int]:
        return self.profile(tenant_id).auto_close_hours

    def get_timezone(self, tenant_id: str) -> str:
        return self.profile(tenant_id).timezone

    def is_whatsapp_business(self, tenant_id: str) -> bool:
        return self.profile(tenant_id).whatsapp_business

    def resolve_agent(self, tenant_id: str, name: str) -> Optional[str]:
        """Map a roster name (case and whitespace insensitive) to a user id."""
        return self.profile(tenant_id).agent_roster.get(_roster_key(name))
