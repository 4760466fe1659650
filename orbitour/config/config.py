import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import dotenv_values

CONFIG_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CONFIG_DIR.parents[1]


class ConfigError(ValueError):
    pass


def get_default_config() -> Dict[str, Any]:
    """Get default configuration"""
    return {
        # Backend proxy
        "api_base_url": "http://localhost:3001",
        "proxy_image_path": "/api/proxy-image",
        # Hosts whose assets may be re-fetched through the proxy endpoint
        "proxy_hosts": [
            "s3.amazonaws.com",
            "s3-accelerate.amazonaws.com",
            "r2.dev",
        ],

        # Generation
        "direct_timeout_sec": 15 * 60,
        "max_attempts": 3,
        "default_prompt": "Cinematic transition shot between starting and ending images. Smooth camera movement.",
        "default_resolution": "480p",
        "default_quality": "fast",
        "default_duration": 1.5,
        "default_token_type": "spark",

        # Playback
        "autoplay_interval_sec": 0.5,
        "preload_radius": 2,

        # Server
        "sse_max_pending_events": 50,
        "sse_heartbeat_sec": 15,

        # Logging
        "log_file": "logs/orbitour.log",
        "log_level": "INFO",
    }


# env var -> (config key, parser)
_ENV_OVERRIDES = {
    "ORBITOUR_API_URL": ("api_base_url", str),
    "ORBITOUR_PROXY_HOSTS": ("proxy_hosts", lambda v: [h.strip() for h in v.split(",") if h.strip()]),
    "ORBITOUR_DIRECT_TIMEOUT_SEC": ("direct_timeout_sec", float),
    "ORBITOUR_MAX_ATTEMPTS": ("max_attempts", int),
    "ORBITOUR_LOG_FILE": ("log_file", str),
    "ORBITOUR_LOG_LEVEL": ("log_level", str),
    "ORBITOUR_TOKEN_TYPE": ("default_token_type", str),
}


def _find_settings_file() -> Optional[Path]:
    for name in ("settings.yaml", "settings.example.yaml"):
        candidate = CONFIG_DIR / name
        if candidate.exists():
            return candidate
    return None


def _load_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
    return data


def _apply_env(config: Dict[str, Any], env_vars: Mapping[str, Optional[str]]) -> None:
    for env_key, (config_key, parse) in _ENV_OVERRIDES.items():
        raw = env_vars.get(env_key)
        if raw is None or raw == "":
            continue
        try:
            config[config_key] = parse(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {env_key}: {raw!r}") from e


def load_config(
    config_path: Optional[os.PathLike] = None,
    env_file: Optional[os.PathLike] = None,
) -> Dict[str, Any]:
    """
    Build the runtime configuration.

    Defaults are overlaid with the YAML settings file, then with values from a
    .env file, then with the process environment.
    """
    config = get_default_config()

    path = Path(config_path) if config_path is not None else _find_settings_file()
    if path is not None:
        config.update(_load_yaml(path))

    env_path = Path(env_file) if env_file is not None else PROJECT_ROOT / ".env"
    if env_path.exists():
        _apply_env(config, dotenv_values(env_path))
    _apply_env(config, os.environ)

    for key in ("max_attempts", "direct_timeout_sec", "autoplay_interval_sec"):
        try:
            value = float(config[key])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key} must be a number, got {config[key]!r}") from e
        if value <= 0:
            raise ConfigError(f"{key} must be positive, got {config[key]}")

    return config
