import logging
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("settings")

class HealingCommand(BaseModel):
    id: str = Field(min_length=1)
    label: str = Field(min_length=1)
    command: str = Field(min_length=1)
    cooldown_minutes: int = Field(default=60, ge=0, le=1440)

def _is_placeholder(item: Any) -> bool:
    # UI editors save rows like {} or {"cooldown_minutes": 60}
    if not isinstance(item, dict):
        return False
    return all(not str(item.get(k) or "").strip() for k in ("id", "label", "command"))

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    HB_STORAGE_PATH: Path = Path("~/.homebridge").expanduser()
    STATE_PATH: Optional[Path] = None
    DB_URL: str = "sqlite:///./data/bridge.db"
    LOG_LEVEL: str = "INFO"

    CONTROL_ENABLED: bool = True
    INCLUDE_CHILD_BRIDGES: bool = True
    REFRESH_INTERVAL_SECONDS: int = Field(default=60, ge=5)
    HAP_HOST: str = "127.0.0.1"
    HAP_TIMEOUT_SECONDS: float = Field(default=8.0, gt=0)

    SELF_HEALING_ENABLED: bool = False
    MAX_ACTIONS_PER_DAY: int = Field(default=5, ge=1, le=50)
    HEALING_COMMANDS: List[HealingCommand] = []
    COMMAND_TIMEOUT_SECONDS: float = 30.0
    RESTART_GRACE_SECONDS: float = 0.75

    @field_validator("HB_STORAGE_PATH", "STATE_PATH")
    @classmethod
    def _expand_home(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value is not None else value

    @field_validator("HEALING_COMMANDS", mode="before")
    @classmethod
    def _drop_invalid_commands(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        kept, ignored = [], 0
        for item in value:
            if _is_placeholder(item):
                continue
            try:
                kept.append(HealingCommand.model_validate(item))
            except ValidationError:
                ignored += 1
        if ignored:
            log.warning("Ignored %d invalid item(s) from HEALING_COMMANDS", ignored)
        return kept

    @property
    def state_file(self) -> Path:
        if self.STATE_PATH is not None:
            return self.STATE_PATH
        return self.HB_STORAGE_PATH / "homebridge-llm-control" / "state.json"

settings = Settings()
