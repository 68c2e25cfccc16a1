from pathlib import Path

import pytest

from wabridge.config import BridgeConfig, BridgeConfigError


def test_paths_are_expanded_and_absolute(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))

    config = BridgeConfig(database_path=Path("~/bridge/db.json"), temp_dir=Path("scratch"))

    assert config.database_path == (tmp_path / "bridge" / "db.json").resolve()
    assert config.temp_dir.is_absolute()


def test_settings_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WABRIDGE_TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("WABRIDGE_TELEGRAM_CHAT_ID", "-1001234")
    monkeypatch.setenv("WABRIDGE_PRIVILEGED_OPERATOR_IDS", "[1, 2]")
    monkeypatch.setenv("WABRIDGE_STATUS_AUTO_VIEW", "true")

    config = BridgeConfig()

    assert config.require_credentials() == ("123:abc", -1001234)
    assert config.privileged_operator_ids == {1, 2}
    assert config.status_auto_view is True


def test_missing_credentials_are_reported_together(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WABRIDGE_TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.delenv("WABRIDGE_TELEGRAM_CHAT_ID", raising=False)

    with pytest.raises(BridgeConfigError) as excinfo:
        BridgeConfig().require_credentials()

    message = str(excinfo.value)
    assert "WABRIDGE_TELEGRAM_BOT_TOKEN" in message
    assert "WABRIDGE_TELEGRAM_CHAT_ID" in message


def test_defaults_match_documented_timings() -> None:
    config = BridgeConfig()

    assert config.read_receipt_delay_seconds == 2.0
    assert config.typing_pause_seconds == 3.0
    assert config.available_delay_seconds == 2.0
    assert config.call_dedupe_seconds == 30.0
    assert config.auth_timeout_seconds == 86400
    assert config.welcome_message_enabled is True
    assert config.mirror_own_messages is False
