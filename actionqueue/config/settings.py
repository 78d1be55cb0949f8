"""JSON configuration stored at ``$ACTIONQUEUE_HOME/config.json``.

Keys are hyphenated on disk (``max-attempts``); the model exposes them as
attributes (``settings.max_attempts``).
"""
import importlib
import json
import os
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


def actionqueue_home() -> str:
    return os.environ.get("ACTIONQUEUE_HOME", os.path.join(os.path.expanduser("~"), ".actionqueue"))


def config_path() -> str:
    return os.path.join(actionqueue_home(), "config.json")


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    database_url: Optional[str] = Field(default=None, alias="database-url")
    max_attempts: int = Field(default=3, ge=1, le=10, alias="max-attempts")
    timeout_seconds: int = Field(default=300, ge=30, le=3600, alias="timeout-seconds")
    claim_limit: int = Field(default=10, ge=1, le=100, alias="claim-limit")
    poll_interval: float = Field(default=60.0, gt=0, alias="poll-interval")
    backoff_base_seconds: int = Field(default=10, ge=1, alias="backoff-base-seconds")
    backoff_max_seconds: int = Field(default=1800, ge=1, alias="backoff-max-seconds")
    log_level: str = Field(default="INFO", alias="log-level")
    gateway_factory: Optional[str] = Field(default=None, alias="gateway-factory")
    credential_factory: Optional[str] = Field(default=None, alias="credential-factory")
    validator_factory: Optional[str] = Field(default=None, alias="validator-factory")

    def to_file_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


DEFAULT_CONFIG = Settings().to_file_dict()


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Raw config dict; the file is created with defaults on first use."""
    path = path or config_path()
    if not os.path.exists(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
    with open(path, 'r') as f:
        return json.load(f)


def save_config(config: Dict[str, Any], path: Optional[str] = None) -> None:
    path = path or config_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config, f, indent=2)


def load_settings(path: Optional[str] = None) -> Settings:
    return Settings.model_validate(load_config(path))


def parse_value(value: str) -> Any:
    """Turn a command-line string into a JSON scalar where it looks like one."""
    try:
        return json.loads(value)
    except ValueError:
        return value


def import_object(path: str) -> Any:
    """Resolve a ``package.module:attribute`` import string."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got '{path}'")
    target = importlib.import_module(module_name)
    for part in attr.split("."):
        target = getattr(target, part)
    return target
