"""Configuration loader for Concord."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import logging
import os
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "concord" / "config.yaml"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_number(data: Dict[str, Any], env: str, section: str, key: str, cast=float) -> None:
    value = os.getenv(env)
    if not value:
        return
    try:
        data.setdefault(section, {})[key] = cast(value)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", env, value)


def load_config(user_path: Path | None = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        data = yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {}
    user_path = user_path or USER_CONFIG_PATH
    if user_path.exists():
        override = yaml.safe_load(user_path.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("CONCORD_HOST")
    if host:
        data.setdefault("server", {})["host"] = host
    _env_number(data, "CONCORD_PORT", "server", "port", int)

    data_dir = os.getenv("CONCORD_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    log_level = os.getenv("CONCORD_LOG_LEVEL")
    if log_level:
        data["log_level"] = log_level.upper()

    # Environment overrides - Coordinator budgets
    _env_number(data, "CONCORD_MODEL_TIMEOUT", "coordinator", "model_timeout_seconds")
    _env_number(data, "CONCORD_PLAN_TIMEOUT", "coordinator", "plan_timeout_seconds")

    # Environment overrides - Meta-orchestrator
    _env_number(data, "CONCORD_CONFIDENCE_THRESHOLD", "meta", "confidence_threshold")

    arbiter = os.getenv("CONCORD_ARBITER_MODEL")
    if arbiter:
        data.setdefault("synthesis", {})["arbiter"] = arbiter

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".concord")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def log_level(self) -> str:
        return str(self.raw.get("log_level", "INFO"))

    @property
    def models(self) -> List[Dict[str, Any]]:
        return self.raw.get("models", []) or []

    @property
    def selector(self) -> Dict[str, Any]:
        return self.raw.get("selector", {})

    @property
    def coordinator(self) -> Dict[str, Any]:
        return self.raw.get("coordinator", {})

    @property
    def synthesis(self) -> Dict[str, Any]:
        return self.raw.get("synthesis", {})

    @property
    def ledger(self) -> Dict[str, Any]:
        return self.raw.get("ledger", {})

    @property
    def meta(self) -> Dict[str, Any]:
        return self.raw.get("meta", {})

    @property
    def cache(self) -> Dict[str, Any]:
        return self.raw.get("cache", {})

    @property
    def events(self) -> Dict[str, Any]:
        return self.raw.get("events", {})

    @property
    def model_timeout_seconds(self) -> float:
        """Per-model call timeout. Default 30 seconds."""
        return float(self.coordinator.get("model_timeout_seconds", 30))

    @property
    def plan_timeout_seconds(self) -> float:
        """Wall-clock budget for a whole plan. Default 2 minutes."""
        return float(self.coordinator.get("plan_timeout_seconds", 120))

    @property
    def availability_ttl_seconds(self) -> float:
        """How long an availability check result is reused. Default 10 seconds."""
        return float(self.selector.get("availability_ttl_seconds", 10))

    @property
    def max_workers(self) -> int:
        return int(self.coordinator.get("max_workers", 12))

    @property
    def confidence_threshold(self) -> float:
        return float(self.meta.get("confidence_threshold", 0.8))


def get_config() -> Config:
    return Config(load_config())
