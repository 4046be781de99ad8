"""
Tests for settings loading, the tenant directory and the manager hierarchy.
"""
import textwrap
from types import MappingProxyType

import pytest

from models.schemas import UserRole


class TestSettings:

    def teardown_method(self):
        import config.settings as settings_module
        settings_module._settings = None

    def test_defaults_without_file(self, tmp_path):
        from config.settings import load_settings
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert settings.app_name == "ChatFlow"
        assert settings.database.store_backend == "memory"
        assert settings.pipeline.default_alert_delay_minutes == 30

    def test_bundled_yaml_loads(self):
        from config.settings import load_settings
        settings = load_settings()
        assert settings.scheduler.pool_size == 10
        assert settings.pipeline.ticket_delay_seconds == 5
        assert settings.working_hours.workdays == [0, 1, 2, 3, 4]

    def test_env_substitution_and_tenants(self, tmp_path, monkeypatch):
        from config.settings import load_settings
        monkeypatch.setenv("CHATFLOW_TEST_WEBHOOK", "https://hooks.example.com/agents")
        path = tmp_path / "settings.yaml"
        path.write_text(textwrap.dedent("""
            timezone: America/Bogota
            notifications:
              webhook_url: "${CHATFLOW_TEST_WEBHOOK}"
              unknown_key: ignored
            tenants:
              acme:
                alert_delay_minutes: 20
                agents:
                  "Maria Lopez": "a1"
        """))
        settings = load_settings(str(path))
        assert settings.notifications.webhook_url == "https://hooks.example.com/agents"
        assert settings.tenants["acme"].alert_delay_minutes == 20
        assert settings.tenants["acme"].timezone == "America/Bogota"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        from config.settings import load_settings
        path = tmp_path / "custom.yaml"
        path.write_text("app_name: Custom\n")
        monkeypatch.setenv("CHATFLOW_CONFIG", str(path))
        assert load_settings().app_name == "Custom"


class TestTenantDirectory:

    def test_profile_values_and_defaults(self, tenants):
        assert tenants.get_alert_delay_minutes("t1") == 30
        assert tenants.get_auto_close_hours("t1") == 24
        assert tenants.get_auto_close_hours("unknown") is None
        assert tenants.get_alert_delay_minutes("unknown", default=15) == 15
        assert tenants.get_alert_delay_minutes("unknown") == 30
        assert tenants.is_whatsapp_business("wa") is True
        assert tenants.get_timezone("unknown") == "America/Lima"
        assert sorted(tenants.tenant_ids()) == ["t1", "wa"]

    def test_from_settings_builds_roster(self):
        from config.settings import Settings, TenantConfig
        from config.tenants import TenantDirectory
        settings = Settings()
        settings.tenants["acme"] = TenantConfig(
            alert_delay_minutes=20, timezone="America/Bogota",
            agents={"Maria  Lopez": "a1"},
        )
        directory = TenantDirectory.from_settings(settings)
        assert directory.resolve_agent("acme", "maria lopez") == "a1"
        assert directory.resolve_agent("acme", "MARIA LOPEZ ") == "a1"
        assert directory.resolve_agent("acme", "someone else") is None
        assert directory.get_timezone("acme") == "America/Bogota"

    def test_profiles_are_read_only(self, tenants):
        profile = tenants.profile("t1")
        with pytest.raises(Exception):
            profile.alert_delay_minutes = 5
        assert isinstance(profile.agent_roster, MappingProxyType)


class TestManagerHierarchy:

    def _hierarchy(self):
        from core.hierarchy import ManagerHierarchy
        parents = {"agent": "lead", "lead": "manager", "manager": "admin", "admin": None, "peer": "lead"}
        roles = {
            "agent": UserRole.AGENT, "lead": UserRole.STAFF,
            "manager": UserRole.MANAGER_LEVEL_2, "admin": UserRole.ADMIN, "peer": UserRole.AGENT,
        }
        return ManagerHierarchy(parents, roles)

    def test_chain_nearest_first(self):
        assert self._hierarchy().chain("agent") == ["lead", "manager", "admin"]

    def test_nearest_supervisor_skips_non_supervisors(self):
        hierarchy = self._hierarchy()
        assert hierarchy.nearest_supervisor("agent") == "manager"
        assert hierarchy.nearest_supervisor("admin") is None

    def test_subordinates(self):
        assert sorted(self._hierarchy().subordinates("lead")) == ["agent", "peer"]

    def test_cycle_terminates(self):
        from core.hierarchy import ManagerHierarchy
        hierarchy = ManagerHierarchy({"a": "b", "b": "a"}, {"a": UserRole.AGENT, "b": UserRole.AGENT})
        assert hierarchy.chain("a") == ["b"]
        assert hierarchy.nearest_supervisor("a") is None

    @pytest.mark.asyncio
    async def test_load_from_store(self, store, make_user):
        from core.hierarchy import ManagerHierarchy
        boss = await make_user(UserRole.MANAGER_LEVEL_1)
        agent = await make_user(UserRole.AGENT, manager_id=boss.id)
        await make_user(UserRole.ADMIN, tenant_id="other")
        hierarchy = await ManagerHierarchy.load(store, tenant_id="t1")
        assert hierarchy.parent(agent.id) == boss.id
        assert hierarchy.nearest_supervisor(agent.id) == boss.id
