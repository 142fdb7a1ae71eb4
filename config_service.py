import json
import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

DEFAULT_CONFIG_PATH = os.environ.get("CONFIG_PATH", os.path.join(os.getcwd(), "config.json"))

VERSION = "0.1.0"


class Settings(BaseModel):
    """Process-wide configuration, fixed at startup."""

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = 9069
    project_root: str = "/srv/production"
    compose_file: str = "docker-compose.yml"
    env_file: str = ".env"
    compose_label: str = "com.docker.compose.project"
    compose_command: List[str] = ["docker", "compose"]
    docker_timeout: int = 30
    stop_grace: int = 10
    action_timeout: int = 300
    shutdown_grace: int = 10
    default_tail: str = "200"
    max_line_bytes: int = 1024 * 1024
    error_log: str = os.path.join(os.path.dirname(os.path.abspath(__file__)), "log.txt")


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    cfg_path = path or DEFAULT_CONFIG_PATH
    if not os.path.exists(cfg_path):
        return {}
    try:
        with open(cfg_path, "r") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as e:
        raise ValueError(f"config {cfg_path}: {e}")
    if not isinstance(cfg, dict):
        raise ValueError(f"config {cfg_path}: expected a JSON object")
    return cfg


def load_settings(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """Build the settings from the JSON config file, then apply env overrides.

    Recognised overrides: API_HOST, API_PORT, PRODUCTION_ROOT.
    """
    env = os.environ if env is None else env
    cfg = load_config(path)
    # Expected keys mirror Settings fields, e.g. { "project_root": "/srv/production" }
    if env.get("API_HOST"):
        cfg["host"] = env["API_HOST"]
    if env.get("API_PORT"):
        cfg["port"] = int(env["API_PORT"])
    if env.get("PRODUCTION_ROOT"):
        cfg["project_root"] = env["PRODUCTION_ROOT"]
    return Settings(**cfg)
