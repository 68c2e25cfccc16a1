"""Bridge runtime configuration.

Settings are read from constructor kwargs and `WABRIDGE_*` environment
variables. Credentials are optional at construction time so a host process can
build a config without the bridge being enabled; `require_credentials()` is the
startup gate.
"""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BridgeConfigError(RuntimeError):
    """Raised when the bridge cannot start because configuration is incomplete."""


class BridgeConfig(BaseSettings):
    """Settings for the WhatsApp ↔ Telegram bridge.

    Invariant:
        `database_path` and `temp_dir` are absolute after validation.
        `privileged_operator_ids` bypass the authentication timeout entirely.
    """

    model_config = SettingsConfigDict(env_prefix="WABRIDGE_")

    telegram_bot_token: str | None = None
    telegram_chat_id: int | None = None
    bot_password: str | None = None
    privileged_operator_ids: set[int] = set()
    auth_timeout_seconds: float = 24 * 60 * 60

    database_path: Path = Path("~/.wabridge/database.json")
    temp_dir: Path = Path("~/.wabridge/tmp")

    mirror_own_messages: bool = False
    welcome_message_enabled: bool = True
    call_log_welcome_enabled: bool = False
    sync_profile_pictures: bool = True
    status_auto_view: bool = False
    presence_enabled: bool = True
    read_receipts_enabled: bool = True

    read_receipt_delay_seconds: float = 2.0
    typing_pause_seconds: float = 3.0
    available_delay_seconds: float = 2.0
    presence_min_interval_seconds: float = 1.0
    call_dedupe_seconds: float = 30.0
    message_dedupe_seconds: float = 10 * 60
    reconcile_delay_seconds: float = 0.2
    contact_sync_interval_seconds: float = 60 * 60
    poll_timeout_seconds: int = 30

    @field_validator("database_path", "temp_dir")
    @classmethod
    def _normalize_path_settings(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    def require_credentials(self) -> tuple[str, int]:
        """Return `(token, chat_id)` or raise `BridgeConfigError`."""

        missing = []
        if not self.telegram_bot_token:
            missing.append("WABRIDGE_TELEGRAM_BOT_TOKEN")
        if self.telegram_chat_id is None:
            missing.append("WABRIDGE_TELEGRAM_CHAT_ID")
        if missing:
            raise BridgeConfigError(
                "Telegram bridge disabled - missing settings: " + ", ".join(missing)
            )
        assert self.telegram_bot_token is not None
        assert self.telegram_chat_id is not None
        return self.telegram_bot_token, self.telegram_chat_id
