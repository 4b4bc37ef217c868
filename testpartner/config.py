"""Configuration system for testpartner.

This module loads ``config/testpartner.yaml``, validates it, and applies
environment-specific overrides selected by ``TESTPARTNER_ENV``.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .capture.policy import PRESETS, CapturePolicy, get_policy

VALID_ENVIRONMENTS = {'production', 'staging', 'development', 'test'}


class StoreSettings(BaseModel):
    """Shared store backend settings."""

    backend: str = Field(default="file", description="memory, file or redis")
    path: str = Field(default="./data/testpartner-store.json", description="File store location")
    redis_url: str = Field(default="redis://localhost:6379")
    key_prefix: str = Field(default="testpartner:store:")
    delivery_delay: float = Field(default=0.0, ge=0.0)

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        if v not in {'memory', 'file', 'redis'}:
            raise ValueError("Store backend must be one of: memory, file, redis")
        return v

    def store_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``create_store``."""
        if self.backend == 'redis':
            return {'redis_url': self.redis_url, 'key_prefix': self.key_prefix}
        if self.backend == 'file':
            return {'path': self.path, 'delivery_delay': self.delivery_delay}
        return {'delivery_delay': self.delivery_delay}


class CaptureSettings(BaseModel):
    """Collector policy selection."""

    policy: str = Field(default="full", description="Capture policy preset")
    overrides: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('policy')
    @classmethod
    def validate_policy(cls, v):
        if v not in PRESETS:
            raise ValueError(f"Capture policy must be one of: {sorted(PRESETS)}")
        return v

    def build_policy(self) -> CapturePolicy:
        return get_policy(self.policy, **self.overrides)


class BackendSettings(BaseModel):
    """Backend API settings."""

    enabled: bool = Field(default=False)
    base_url: str = Field(default="http://localhost:3000/api")
    timeout_seconds: float = Field(default=30.0, gt=0)
    verify_ssl: bool = Field(default=True)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO")
    format: Optional[str] = None


class PartnerConfig(BaseModel):
    """Root configuration."""

    environment: str = Field(default="production", description="Environment name")
    store: Dict[str, Any] = Field(default_factory=dict, description="Shared store configuration")
    capture: Dict[str, Any] = Field(default_factory=dict, description="Capture configuration")
    backend: Dict[str, Any] = Field(default_factory=dict, description="Backend API configuration")
    logging: Dict[str, Any] = Field(default_factory=dict, description="Logging configuration")
    environments: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict,
        description="Environment-specific overrides"
    )

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in VALID_ENVIRONMENTS:
            raise ValueError(f"Environment must be one of: {VALID_ENVIRONMENTS}")
        return v

    def _section(self, name: str) -> Dict[str, Any]:
        """Section with environment-specific overrides applied."""
        config = dict(getattr(self, name))
        env_config = self.environments.get(self.environment, {})
        if name in env_config:
            config.update(env_config[name])
        return config

    def get_store_settings(self) -> StoreSettings:
        return StoreSettings(**self._section('store'))

    def get_capture_settings(self) -> CaptureSettings:
        return CaptureSettings(**self._section('capture'))

    def get_backend_settings(self) -> BackendSettings:
        return BackendSettings(**self._section('backend'))

    def get_logging_settings(self) -> LoggingSettings:
        return LoggingSettings(**self._section('logging'))


class PartnerConfigManager:
    """Manager for configuration loading and caching."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to config YAML file. Defaults to config/testpartner.yaml
        """
        if config_path is None:
            project_root = Path(__file__).parent.parent
            config_path = project_root / "config" / "testpartner.yaml"

        self.config_path = Path(config_path)
        self._config: Optional[PartnerConfig] = None
        self._loaded_env = None

    def load_config(self, force_reload: bool = False) -> PartnerConfig:
        """Load configuration from YAML file.

        A missing file yields the built-in defaults.

        Args:
            force_reload: Force reload even if already cached

        Returns:
            Loaded and validated configuration

        Raises:
            yaml.YAMLError: If YAML is invalid
            ValueError: If configuration validation fails
        """
        current_env = os.environ.get('TESTPARTNER_ENV', 'production')

        if self._config is not None and not force_reload and current_env == self._loaded_env:
            return self._config

        config_data: Dict[str, Any] = {}
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in {self.config_path}: {e}")

        # Override environment from env var if set
        if current_env != 'production':
            config_data['environment'] = current_env

        try:
            self._config = PartnerConfig(**config_data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation failed: {e}")

        self._loaded_env = current_env
        return self._config

    @property
    def config(self) -> PartnerConfig:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            return self.load_config()
        return self._config

    @property
    def environment(self) -> str:
        return self.config.environment

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'


# Global config manager instance
_config_manager: Optional[PartnerConfigManager] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> PartnerConfigManager:
    """Get global configuration manager.

    Args:
        config_path: Path to config file (only used on first call)

    Returns:
        Global PartnerConfigManager instance
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = PartnerConfigManager(config_path)
    return _config_manager
