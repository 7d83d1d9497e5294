from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .llm import DEFAULT_API_URL
from .model import ModelParams, TrackedUser

# Environment variable names for secrets
ENV_BOT_TOKEN = "MILLAMA_BOT_TOKEN"
ENV_API_KEY = "MILLAMA_API_KEY"

DEFAULT_CONFIG_PATH = Path("config.toml")
DEFAULT_MODEL = "meta-llama/llama-4-maverick-17b-128e-instruct"
DEFAULT_TEMPERATURE = 1.5
DEFAULT_SESSION_FILE = "userbot.session"
DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_HISTORY_LIMIT = 25


class ConfigError(RuntimeError):
    pass


class TelegramSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_id: int
    api_hash: str = Field(min_length=1)
    bot_token: str = Field(min_length=1)
    operator_chat_id: int | None = None


class AiSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_key: str = Field(min_length=1)
    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0, le=2)
    base_system_prompt: str | None = None
    timeout_s: float = Field(default=60, gt=0)

    def model_params(self) -> ModelParams:
        return ModelParams(model=self.model, temperature=self.temperature)


class GeneralSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_file: str = DEFAULT_SESSION_FILE
    debounce_seconds: float = Field(default=DEFAULT_DEBOUNCE_SECONDS, ge=0)
    history_limit: int = Field(default=DEFAULT_HISTORY_LIMIT, ge=1)


class UserSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int
    name: str = Field(min_length=1)
    system_prompt: str = Field(min_length=1)

    def tracked_user(self) -> TrackedUser:
        return TrackedUser(id=self.id, name=self.name, system_prompt=self.system_prompt)


class MillamaSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    telegram: TelegramSettings
    ai: AiSettings
    settings: GeneralSettings = Field(default_factory=GeneralSettings)
    users: list[UserSettings] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_groq_table(cls, data: Any) -> Any:
        if isinstance(data, dict) and "ai" not in data and "groq" in data:
            data = dict(data)
            data["ai"] = data.pop("groq")
        return data

    @model_validator(mode="after")
    def _unique_user_ids(self) -> MillamaSettings:
        seen: set[int] = set()
        for user in self.users:
            if user.id in seen:
                raise ValueError(f"duplicate user id {user.id}")
            seen.add(user.id)
        return self

    def tracked_users(self) -> list[TrackedUser]:
        return [user.tracked_user() for user in self.users]


def _read_config(cfg_path: Path) -> dict:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def _apply_env_overrides(config: dict) -> dict:
    config = dict(config)
    env_token = os.environ.get(ENV_BOT_TOKEN)
    if env_token and env_token.strip():
        telegram = dict(config.get("telegram") or {})
        telegram["bot_token"] = env_token.strip()
        config["telegram"] = telegram
    env_key = os.environ.get(ENV_API_KEY)
    if env_key and env_key.strip():
        table = "ai" if "ai" in config or "groq" not in config else "groq"
        ai = dict(config.get(table) or {})
        ai["api_key"] = env_key.strip()
        config[table] = ai
    return config


def validate_settings_data(config: dict, config_path: Path) -> MillamaSettings:
    try:
        return MillamaSettings.model_validate(_apply_env_overrides(config))
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {config_path}: {exc}") from exc


def load_settings(path: str | Path | None = None) -> tuple[MillamaSettings, Path]:
    """Load and validate the TOML config.

    Environment variables MILLAMA_BOT_TOKEN and MILLAMA_API_KEY take
    precedence over the values in the file.
    """
    cfg_path = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
    config = _read_config(cfg_path)
    return validate_settings_data(config, cfg_path), cfg_path
