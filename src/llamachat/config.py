import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv
from pydantic import BaseModel

from llamachat.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8080"
DEFAULT_BACKUP_DIR = ".llamachat/backups"


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    if raw.strip().lower() == "none":
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"Environment variable {name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"Environment variable {name} must be an integer, got {raw!r}") from e


class SamplingParams(BaseModel):
    max_tokens: int = 1024
    temperature: float = 0.7
    top_p: float = 1.0
    min_p: float | None = None
    repeat_penalty: float | None = None
    stop: list[str] | None = None

    def to_request(self) -> dict:
        return self.model_dump(exclude_none=True)


@dataclass
class ClientConfig:
    base_url: str = field(
        default_factory=lambda: get_optional_env("LLAMACHAT_BASE_URL", DEFAULT_BASE_URL)
    )
    backup_dir: str = field(
        default_factory=lambda: get_optional_env("LLAMACHAT_BACKUP_DIR", DEFAULT_BACKUP_DIR)
    )
    connect_timeout: float = 10.0
    # None waits on the token stream until the server closes it or the user stops
    read_timeout: float | None = None
    max_retries: int = 3
    retry_base_delay: float = 0.5
    save_debounce_s: float = 0.45
    max_tool_rounds: int = 3
    context_output_limit: int = 20000
    ui_output_limit: int = 20000
    compress_threshold: int = 256

    def __post_init__(self) -> None:
        if self.max_tool_rounds < 0:
            raise ConfigError("max_tool_rounds must be >= 0")
        if self.context_output_limit <= 0 or self.ui_output_limit <= 0:
            raise ConfigError("output limits must be positive")
        if self.save_debounce_s < 0:
            raise ConfigError("save_debounce_s must be >= 0")
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "ClientConfig":
        load_dotenv(dotenv_path)
        config = cls(
            connect_timeout=_env_float("LLAMACHAT_CONNECT_TIMEOUT", 10.0) or 10.0,
            read_timeout=_env_float("LLAMACHAT_READ_TIMEOUT", None),
            max_retries=_env_int("LLAMACHAT_MAX_RETRIES", 3),
            max_tool_rounds=_env_int("LLAMACHAT_MAX_TOOL_ROUNDS", 3),
        )
        logger.debug(f"Loaded config: base_url={config.base_url} backup_dir={config.backup_dir}")
        return config
