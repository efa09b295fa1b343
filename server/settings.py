from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field

log = logging.getLogger("genqueue.settings")

SERVER_DIR = Path(__file__).resolve().parent
CONFIG_PATH = SERVER_DIR / "config" / "server.yaml"

# env var -> config field
ENV_OVERRIDES = {
    "AUTO1111_API_URL": "backend_url",
    "HOST": "host",
    "PORT": "ws_port",
    "FILES_PORT": "files_port",
    "DATA_DIR": "data_dir",
}


class ServerConfig(BaseModel):
    server_id: str = "genqueue"
    backend_url: str = "http://127.0.0.1:7860"
    backend_timeout_s: float = Field(default=300.0, gt=0)
    host: str = "0.0.0.0"
    ws_port: int = Field(default=8080, ge=1, le=65535)
    files_port: int = Field(default=8081, ge=1, le=65535)
    data_dir: Path = Path("data")
    tick_interval_s: float = Field(default=1.0, gt=0)
    eviction_delay_s: float = Field(default=300.0, ge=0)

    @property
    def output_dir(self) -> Path:
        return self.data_dir / "output"


def find_config_path(explicit: Optional[Union[str, Path]] = None) -> Path:
    if explicit:
        return Path(explicit)
    env_path = os.environ.get("GENQUEUE_CONFIG")
    if env_path:
        return Path(env_path)
    return CONFIG_PATH


def load_config(path: Optional[Union[str, Path]] = None, environ: Optional[Dict[str, str]] = None) -> ServerConfig:
    """Read the YAML config (missing file means defaults), then apply env overrides."""
    config_path = find_config_path(path)
    environ = os.environ if environ is None else environ

    raw: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config {config_path} must be a mapping, got {type(raw).__name__}")
    elif path:
        raise FileNotFoundError(f"Missing config: {config_path}")
    else:
        log.info("No config at %s, using defaults", config_path)

    for env_key, field in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if value:
            raw[field] = value
    return ServerConfig.model_validate(raw)
