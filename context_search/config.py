import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from context_search.constants import RATE_LIMIT_MIN_INTERVAL

CONFIG_DIR = Path.home() / ".config" / "context_search"
CONFIG_FILE = CONFIG_DIR / "config.json"


def load_config() -> dict:
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError):
        return {}


def save_config(key: str, value: str):
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    config = load_config()
    config[key] = value
    with open(CONFIG_FILE, "w") as f:
        json.dump(config, f, indent=2)
    CONFIG_FILE.chmod(0o600)


def get_saved_api_key() -> Optional[str]:
    return load_config().get("groq_api_key")


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    groq_api_key: Optional[str] = None
    hf_api_key: Optional[str] = None
    redis_rest_url: Optional[str] = None
    redis_rest_token: Optional[str] = None
    log_level: str = "INFO"
    semantic_fail_open: bool = False
    rate_limit_interval: float = RATE_LIMIT_MIN_INTERVAL

    @classmethod
    def from_env(cls) -> "Settings":
        interval = os.environ.get("RATE_LIMIT_INTERVAL")
        return cls(
            groq_api_key=os.environ.get("GROQ_API_KEY") or get_saved_api_key(),
            hf_api_key=os.environ.get("HF_API_KEY"),
            redis_rest_url=os.environ.get("UPSTASH_REDIS_REST_URL"),
            redis_rest_token=os.environ.get("UPSTASH_REDIS_REST_TOKEN"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            semantic_fail_open=_env_flag("SEMANTIC_FAIL_OPEN"),
            rate_limit_interval=float(interval) if interval else RATE_LIMIT_MIN_INTERVAL,
        )

    @property
    def remote_cache_enabled(self) -> bool:
        return bool(self.redis_rest_url and self.redis_rest_token)
