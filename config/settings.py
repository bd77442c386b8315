from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Telegram
    telegram_bot_token: str = ""
    telegram_log_channel: int = 0
    telegram_status_channel: int = 0
    telegram_admin_allowlist: list[str] = []

    # Slack
    slack_bot_token: str = ""
    slack_app_token: str = ""
    slack_app_id: str = ""
    slack_config_token: str = ""  # apps.manifest.* 호출용 (선택)
    slack_log_channel: str = ""
    slack_status_channel: str = ""
    slack_admin_allowlist: list[str] = []
    slack_profile_cache_seconds: int = 300

    # Outbound rate ceilings (calls per window, per destination)
    telegram_rate_limit_calls: int = 20
    telegram_rate_limit_window: float = 60.0
    slack_rate_limit_calls: int = 60
    slack_rate_limit_window: float = 60.0

    # Interactions
    interaction_idle_timeout_minutes: int = 30
    interaction_sweep_interval_seconds: int = 60

    # Database
    database_url: str = f"sqlite+aiosqlite:///{BASE_DIR / 'data' / 'botmux.db'}"

    # Logging
    log_level: str = "INFO"


settings = Settings()
