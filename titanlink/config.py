"""
Configuration loader for TitanLink.
Supports YAML config files with sensible defaults and environment overrides.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_CONFIG = {
    "signaling": {
        "host": "0.0.0.0",
        "port": 3001,
        "url": "ws://localhost:3001",
        "session_ttl_minutes": 120,
        "cleanup_interval_seconds": 60,
        "heartbeat_seconds": 30,
        "connect_timeout": 15,
        "request_timeout": 10,
        "max_retries": 3,
        "retry_base_delay": 0.5,
        "retry_max_delay": 8.0,
    },
    "relay": {
        "servers": [],
        "credential_ttl": 86400,
        "user_id": "titanlink",
        "health_check_interval": 60,
        "probe_timeout": 2.0,
    },
    "twilio": {
        "account_sid": "",
        "auth_token": "",
    },
    "stream": {
        "bitrate": 10,
        "fps": 60,
        "codec": "h264",
        "monitor": 1,
        "audio_device": "",
        "audio_format": "",
        "renegotiate_grace_seconds": 5,
        "ice_restart": True,
    },
    "quality": {
        "adaptive": True,
        "sample_interval_ms": 500,
        "window_size": 6,
        "min_delta_kbps": 250,
        "cooldown_seconds": 5,
    },
    "logging": {
        "level": "INFO",
    },
}


def get_config_paths() -> list[Path]:
    """Get list of possible config file locations (in priority order)."""
    paths = []

    # 1. Current directory
    paths.append(Path.cwd() / "config.yaml")

    # 2. XDG config directory
    xdg_config = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg_config:
        paths.append(Path(xdg_config) / "titanlink" / "config.yaml")

    # 3. ~/.config/titanlink/
    paths.append(Path.home() / ".config" / "titanlink" / "config.yaml")

    # 4. ~/.titanlink.yaml
    paths.append(Path.home() / ".titanlink.yaml")

    return paths


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Apply environment variable overrides on top of file settings."""
    env = os.environ if environ is None else environ
    config = copy.deepcopy(config)

    if env.get("PORT"):
        config["signaling"]["port"] = int(env["PORT"])
    if env.get("TITANLINK_SIGNALING_URL"):
        config["signaling"]["url"] = env["TITANLINK_SIGNALING_URL"]
    if env.get("TURN_SERVER_URL") and env.get("TURN_SERVER_SECRET"):
        servers = [
            s for s in config["relay"]["servers"]
            if s.get("url") != env["TURN_SERVER_URL"]
        ]
        servers.append({
            "url": env["TURN_SERVER_URL"],
            "secret": env["TURN_SERVER_SECRET"],
            "priority": 0,
        })
        config["relay"]["servers"] = servers
    if env.get("TURN_CREDENTIAL_TTL"):
        config["relay"]["credential_ttl"] = int(env["TURN_CREDENTIAL_TTL"])
    if env.get("TWILIO_ACCOUNT_SID"):
        config["twilio"]["account_sid"] = env["TWILIO_ACCOUNT_SID"]
    if env.get("TWILIO_AUTH_TOKEN"):
        config["twilio"]["auth_token"] = env["TWILIO_AUTH_TOKEN"]
    if env.get("TITANLINK_LOG_LEVEL"):
        config["logging"]["level"] = env["TITANLINK_LOG_LEVEL"]

    return config


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from file.

    Args:
        config_path: Explicit config file path. If None, searches default locations.

    Returns:
        Configuration dictionary with defaults filled in.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    # Find config file
    if config_path:
        paths = [config_path]
    else:
        paths = get_config_paths()

    # Try each path
    for path in paths:
        if path.exists():
            try:
                with open(path, "r") as f:
                    file_config = yaml.safe_load(f) or {}
                config = deep_merge(config, file_config)
                break
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load config from %s: %s", path, e)

    return apply_env_overrides(config)


class Config:
    """Configuration wrapper with easy access to settings."""

    def __init__(self, config_path: Optional[Path] = None, data: Optional[Dict[str, Any]] = None):
        if data is not None:
            self._config = deep_merge(copy.deepcopy(DEFAULT_CONFIG), data)
        else:
            self._config = load_config(config_path)

    # Signaling

    @property
    def host(self) -> str:
        return self._config["signaling"]["host"]

    @property
    def port(self) -> int:
        return int(self._config["signaling"]["port"])

    @property
    def signaling_url(self) -> str:
        return self._config["signaling"]["url"]

    @property
    def session_ttl_seconds(self) -> float:
        return float(self._config["signaling"]["session_ttl_minutes"]) * 60

    @property
    def cleanup_interval(self) -> float:
        return float(self._config["signaling"]["cleanup_interval_seconds"])

    @property
    def heartbeat_interval(self) -> float:
        return float(self._config["signaling"]["heartbeat_seconds"])

    @property
    def connect_timeout(self) -> float:
        return float(self._config["signaling"]["connect_timeout"])

    @property
    def request_timeout(self) -> float:
        return float(self._config["signaling"]["request_timeout"])

    @property
    def max_retries(self) -> int:
        return int(self._config["signaling"]["max_retries"])

    @property
    def retry_base_delay(self) -> float:
        return float(self._config["signaling"]["retry_base_delay"])

    @property
    def retry_max_delay(self) -> float:
        return float(self._config["signaling"]["retry_max_delay"])

    # Relay

    @property
    def relay_servers(self) -> List[Dict[str, Any]]:
        return list(self._config["relay"]["servers"] or [])

    @property
    def credential_ttl(self) -> int:
        return int(self._config["relay"]["credential_ttl"])

    @property
    def relay_user_id(self) -> str:
        return self._config["relay"]["user_id"]

    @property
    def health_check_interval(self) -> float:
        return float(self._config["relay"]["health_check_interval"])

    @property
    def probe_timeout(self) -> float:
        return float(self._config["relay"]["probe_timeout"])

    @property
    def twilio_account_sid(self) -> str:
        return self._config["twilio"]["account_sid"]

    @property
    def twilio_auth_token(self) -> str:
        return self._config["twilio"]["auth_token"]

    # Stream

    @property
    def bitrate_mbps(self) -> float:
        return float(self._config["stream"]["bitrate"])

    @property
    def bitrate_bps(self) -> int:
        """Target video bitrate in bits per second."""
        return int(self.bitrate_mbps * 1_000_000)

    @property
    def fps(self) -> int:
        return int(self._config["stream"]["fps"])

    @property
    def codec(self) -> str:
        return self._config["stream"]["codec"]

    @property
    def monitor(self) -> int:
        return int(self._config["stream"]["monitor"])

    @property
    def audio_device(self) -> str:
        return self._config["stream"]["audio_device"]

    @property
    def audio_format(self) -> str:
        return self._config["stream"]["audio_format"]

    @property
    def renegotiate_grace(self) -> float:
        return float(self._config["stream"]["renegotiate_grace_seconds"])

    @property
    def ice_restart(self) -> bool:
        return bool(self._config["stream"]["ice_restart"])

    # Quality

    @property
    def adaptive_quality(self) -> bool:
        return bool(self._config["quality"]["adaptive"])

    @property
    def sample_interval(self) -> float:
        return float(self._config["quality"]["sample_interval_ms"]) / 1000

    @property
    def quality_window(self) -> int:
        return int(self._config["quality"]["window_size"])

    @property
    def min_bitrate_delta(self) -> int:
        """Noise floor for bitrate changes, in bits per second."""
        return int(self._config["quality"]["min_delta_kbps"]) * 1000

    @property
    def quality_cooldown(self) -> float:
        return float(self._config["quality"]["cooldown_seconds"])

    @property
    def log_level(self) -> str:
        return str(self._config["logging"]["level"]).upper()

    def to_dict(self) -> Dict[str, Any]:
        """Return config as dictionary."""
        return copy.deepcopy(self._config)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config(config_path: Optional[Path] = None) -> Config:
    """Reload configuration from file."""
    global _config
    _config = Config(config_path)
    return _config
