from __future__ import annotations

import json

import pytest

from m365_audit_export.config import ConfigurationError, ExportConfig, OutputConfig, PollingConfig
from m365_audit_export.profiles import ProfileStore, TenantProfile


def test_missing_output_directory_is_created(tmp_path):
    target = tmp_path / "exports" / "tenant-a"
    output = OutputConfig(base_dir=str(target))
    assert output.prepare() == target
    assert target.is_dir()


def test_existing_output_directory_is_accepted(tmp_path):
    assert OutputConfig(base_dir=str(tmp_path)).prepare() == tmp_path


def test_output_path_that_is_a_file_is_fatal(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    with pytest.raises(ConfigurationError):
        OutputConfig(base_dir=str(blocker)).prepare()


def test_output_directory_under_a_file_is_fatal(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(ConfigurationError):
        OutputConfig(base_dir=str(blocker / "child")).prepare()


def test_output_file_names(tmp_path):
    output = OutputConfig(base_dir=str(tmp_path), timestamp="20240501T120000Z")
    assert output.audit_log_path("Test").name == "20240501T120000Z-Test-UnifiedAuditLog.json"
    assert output.audit_log_path("a/b: c?").name == "20240501T120000Z-a_b_ c_-UnifiedAuditLog.json"
    assert output.risky_users_path().name == "20240501T120000Z-RiskyUsers.csv"
    assert output.risk_detections_path().name == "20240501T120000Z-RiskyDetections.csv"


def test_polling_config_validation():
    with pytest.raises(ConfigurationError):
        PollingConfig(interval_seconds=-1)
    with pytest.raises(ConfigurationError):
        PollingConfig(max_wait_seconds=0)
    assert PollingConfig(max_wait_seconds=None).max_wait_seconds is None


def test_config_from_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "auth": {
            "mode": "secret",
            "secret": {"tenant_id": "t", "client_id": "c"},
        },
        "polling": {"interval_seconds": 5, "max_wait_seconds": 600},
        "output": {"base_dir": str(tmp_path / "out")},
        "verbose": True,
    }))
    config = ExportConfig.from_file(path)
    assert config.auth.mode == "secret"
    assert config.auth.secret.tenant_id == "t"
    assert config.polling.interval_seconds == 5.0
    assert config.polling.max_wait_seconds == 600
    assert config.output.base_dir == str(tmp_path / "out")
    assert config.verbose is True


def test_config_from_file_missing_auth_key(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"auth": {"certificate": {"tenant_id": "t"}}}))
    with pytest.raises(ConfigurationError):
        ExportConfig.from_file(path)


def test_config_polling_values_are_converted(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"polling": {"interval_seconds": "5", "max_wait_seconds": "600"}}))
    config = ExportConfig.from_file(path)
    assert config.polling.interval_seconds == 5.0
    assert config.polling.max_wait_seconds == 600.0


@pytest.mark.parametrize("max_wait", ["soon", [600]])
def test_config_invalid_max_wait_is_a_configuration_error(tmp_path, max_wait):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"polling": {"max_wait_seconds": max_wait}}))
    with pytest.raises(ConfigurationError):
        ExportConfig.from_file(path)


def test_config_from_unreadable_file(tmp_path):
    with pytest.raises(ConfigurationError):
        ExportConfig.from_file(tmp_path / "missing.json")


def test_profile_store_round_trip(tmp_path):
    path = tmp_path / "profiles.json"
    store = ProfileStore.load(path)
    assert store.list_profiles() == []

    store.add(TenantProfile(name="contoso", tenant_id="t1", client_id="c1"))
    store.add(TenantProfile(name="Fabrikam", tenant_id="t2", client_id="c2",
                            auth_mode="delegated", output_dir="/exports/fabrikam"))

    reloaded = ProfileStore.load(path)
    assert [p.name for p in reloaded.list_profiles()] == ["Fabrikam", "contoso"]
    assert reloaded.default_profile == "contoso"
    assert reloaded.get("fabrikam").auth_mode == "delegated"
    assert reloaded.get_default().tenant_id == "t1"

    assert reloaded.set_default("Fabrikam")
    assert reloaded.remove("Fabrikam")
    assert ProfileStore.load(path).default_profile == "contoso"
    assert not reloaded.remove("Fabrikam")


def test_corrupt_profile_file_is_a_configuration_error(tmp_path):
    path = tmp_path / "profiles.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        ProfileStore.load(path)
