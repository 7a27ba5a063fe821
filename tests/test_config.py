from __future__ import annotations

from pathlib import Path

import allure
import pytest

from portable_content.config import Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_are_valid(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PORTABLE_CONTENT_DB_PATH",
        "PORTABLE_CONTENT_REGISTRY_PATH",
        "PORTABLE_CONTENT_SANDBOX_NETWORK_ISOLATION",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == Path(".portable_content.db")
    assert settings.registry_path is None
    assert settings.sandbox.limits().memory_mb == 1024
    assert settings.sandbox.network_isolation is True
    options = settings.worker.to_options(publish_convention_keys=False)
    assert options.publish_convention_keys is False


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PORTABLE_CONTENT_REGISTRY_PATH", str(tmp_path / "registry.json"))
    monkeypatch.setenv("PORTABLE_CONTENT_WORKER_POOL_SIZE", "5")
    monkeypatch.setenv("PORTABLE_CONTENT_KEEP_WORKDIRS", "yes")
    monkeypatch.setenv("PORTABLE_CONTENT_SANDBOX_TRANSIENT_EXIT_CODES", "75, 99")
    monkeypatch.setenv("PORTABLE_CONTENT_SANDBOX_WALL_CLOCK_SECONDS", "15")
    monkeypatch.setenv("PORTABLE_CONTENT_STORE_ROOT", str(tmp_path / "store"))

    settings = Settings.from_env(db_path=tmp_path / "queue.db")

    assert settings.db_path == tmp_path / "queue.db"
    assert settings.registry_path == tmp_path / "registry.json"
    assert settings.worker.pool_size == 5
    assert settings.worker.keep_workdirs is True
    assert settings.sandbox.transient_exit_codes == (75, 99)
    assert settings.sandbox.limits().wall_clock_seconds == 15.0
    assert settings.storage.root == tmp_path / "store"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PORTABLE_CONTENT_KEEP_WORKDIRS", "maybe"),
        ("PORTABLE_CONTENT_SANDBOX_TRANSIENT_EXIT_CODES", "75,x"),
    ],
)
def test_malformed_values_raise(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PORTABLE_CONTENT_WORKER_POOL_SIZE", "0"),
        ("PORTABLE_CONTENT_SANDBOX_ISOLATION", "vm"),
        ("PORTABLE_CONTENT_SANDBOX_MEMORY_MB", "0"),
        ("PORTABLE_CONTENT_LEASE_SECONDS", "60"),
        ("PORTABLE_CONTENT_RETRY_MAX_SECONDS", "1"),
    ],
)
def test_validate_rejects_unbounded_settings(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env().validate()
