"""
config.py — SOP bot settings.

Usage:
    from sopbot.config import settings
    print(settings.sessions_file)

Values come from the environment or a local .env file. Millisecond fields keep
the names the bot has always been deployed with (SESSION_TTL_MS, ...).
"""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Slack ---
    slack_bot_token: str = ""
    slack_signing_secret: str = ""
    # Used to skip the duplicate "message" event Slack sends alongside app_mention
    slack_bot_user_id: str = ""

    # --- OpenAI ---
    openai_api_key: str = ""
    openai_model: str = "gpt-4"
    openai_temperature: float = 0.2

    # --- Coda ---
    coda_api_token: str = ""
    coda_doc_id: str = ""
    coda_table_id: str = ""
    coda_log_table_id: str = ""
    # Comma-separated list of columns whose values are merged into a SOP's tags
    coda_tag_columns: str = "Tags Bot Result,Tags"
    sop_library_url: str = "https://coda.io/d/SOP-Database_dRB4PLkqlNM"

    # --- Sessions ---
    sessions_file: str = "sessions.json"
    save_delay_ms: int = 500
    session_ttl_ms: int = 1000 * 60 * 60
    # How long a vote on an expired conversation is still attributed to its log row
    feedback_grace_ms: int = 1000 * 60 * 15

    # --- Application ---
    http_timeout_seconds: float = 30.0
    log_level: str = "INFO"

    @property
    def save_delay_seconds(self) -> float:
        return self.save_delay_ms / 1000

    @property
    def session_ttl_seconds(self) -> float:
        return self.session_ttl_ms / 1000

    @property
    def feedback_grace_seconds(self) -> float:
        return self.feedback_grace_ms / 1000

    @property
    def coda_tag_columns_list(self) -> List[str]:
        """Split comma-separated tag columns into a list."""
        return [c.strip() for c in self.coda_tag_columns.split(",") if c.strip()]


settings = Settings()
