import copy
import logging
import os
from typing import Any, Dict

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


class OperatorConfig:
    """Configuration manager for the studio service"""

    def __init__(self, config_path: str = "conf/studio.yaml"):
        self.config_path = config_path
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML, layered over the defaults"""
        defaults = self._get_default_config()
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, "r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f) or {}
                logger.info(f"[config] Loaded studio config from {self.config_path}")
                return _deep_merge(defaults, loaded)
            logger.warning(
                f"[config] Studio config not found at {self.config_path}, using defaults"
            )
            return defaults
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"[config] Failed to load studio config: {e}, using defaults")
            return defaults

    def _get_default_config(self) -> Dict[str, Any]:
        """Return default configuration"""
        return {
            "server": {
                "host": "127.0.0.1",
                "port": 8008,
                "log_level": "info",
                "owner": "admin",
            },
            "security": {
                "admin_token_env": "ADMIN_TOKEN",
                "default_token": "default-admin-token-change-me",
                "cors": {
                    "allow_origins": ["*"],
                    "allow_methods": ["GET", "POST", "OPTIONS"],
                    "allow_headers": [
                        "authorization",
                        "x-client-info",
                        "apikey",
                        "content-type",
                    ],
                    "max_age": 86400,
                },
            },
            "generation": {
                "base_url": "https://api.openai.com/v1",
                "api_key_env": "OPENAI_API_KEY",
                "chat_model": "gpt-4o-mini",
                "image_model": "dall-e-3",
                "image_size": "1792x1024",
                "tts_model": "tts-1-hd",
                "timeout_sec": 60,
            },
            "music": {
                "api_url_env": "MUSIC_API_URL",
                "api_key_env": "MUSIC_API_KEY",
                "default_style": "Urban/Hip-Hop",
            },
            "video": {
                "engine_url_env": "VIDEO_ENGINE_URL",
                "engine_key_env": "VIDEO_ENGINE_KEY",
                "engine_timeout_sec": 15,
                "quality": "ultra",
                "style": "vh1-netflix-premium",
            },
            "storage": {
                "db_path": "studio.db",
                "media_dir": "media",
                "public_base_url": "http://127.0.0.1:8008/media",
                "runs_dir": "runs",
            },
            "pipeline": {
                "batch_size": 3,
                "default_scene_seconds": 30,
                "ready_threshold": 80,
            },
            "recovery": {
                "max_retries": 3,
                "retry_delay_sec": 1.0,
            },
            "cache": {
                "ttl_seconds": 300,
                "max_entries": 1024,
            },
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key path (e.g., 'server.port')"""
        value = self.config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def get_secret(self, env_key_path: str) -> str:
        """Resolve an env-var name stored at env_key_path to its value"""
        env_name = self.get(env_key_path)
        return os.getenv(env_name, "") if env_name else ""

    def reload(self):
        """Reload configuration from file"""
        self.config = self._load_config()
        logger.info("[config] Studio config reloaded")

    def get_sanitized_config(self) -> Dict[str, Any]:
        """Get configuration without sensitive information"""
        config_copy = copy.deepcopy(self.config)
        security = config_copy.get("security", {})
        if "default_token" in security:
            security["default_token"] = "[REDACTED]"
        return config_copy


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# Global config instance
operator_config = OperatorConfig(os.getenv("STUDIO_CONFIG", "conf/studio.yaml"))
