import re
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "CLAWBRIDGE_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "clawbridge" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "clawbridge"
    assistant_name: str = "Andy"
    log_level: str = "INFO"
    telegram_token: str | None = None
    telegram_authorized_user_id: int | None = None
    telegram_main_chat_id: int | None = None
    scheduler_poll_interval: int = 60  # seconds between due-task polls
    group_sync_interval: int = 86400  # seconds between full group name syncs

    @property
    def db_path(self) -> Path:
        return self.data / "messages.db"

    @property
    def trigger_pattern(self) -> re.Pattern[str]:
        return re.compile(rf"^@{re.escape(self.assistant_name)}\b", re.IGNORECASE)


settings = Settings()
