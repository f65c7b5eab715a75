"""
Centralized Configuration Management for ExtensionOS

Provides pydantic-based configuration with:
- Environment variable loading (.env support)
- Type validation
- Default values derived from the base path

Usage:
    from extensionos.core.config import get_config

    config = get_config()
    print(config.plugins_path)
"""

from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ExtensionOSConfig(BaseSettings):
    """
    Central configuration for ExtensionOS

    All settings can be overridden via environment variables with EXTENSIONOS_ prefix.
    For example: EXTENSIONOS_BASE_PATH, EXTENSIONOS_UPDATE_SERVER, etc.
    """

    model_config = SettingsConfigDict(
        env_prefix="EXTENSIONOS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ============================================
    # Paths
    # ============================================

    base_path: Path = Field(default=Path("."), description="Application root")
    plugins_path: Optional[Path] = Field(default=None, description="Defaults to <base>/plugins")
    themes_path: Optional[Path] = Field(default=None, description="Defaults to <base>/themes")
    modules_path: Optional[Path] = Field(default=None, description="Defaults to <base>/modules")
    temp_path: Optional[Path] = Field(default=None, description="Defaults to <base>/storage/temp")
    archive_path: Optional[Path] = Field(default=None, description="Defaults to <base>/storage/archive")
    db_path: Optional[Path] = Field(
        default=None,
        description="Ledger database, defaults to <base>/storage/extensions.sqlite"
    )
    app_db_path: Optional[Path] = Field(
        default=None,
        description="Database migration scripts run against, defaults to the ledger database"
    )

    # ============================================
    # Loading
    # ============================================

    load_modules: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Modules to load, empty means every module found"
    )
    disable_plugins: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Plugins disabled by configuration"
    )

    # ============================================
    # Remote updates
    # ============================================

    update_server: Optional[str] = Field(default=None, description="Marketplace gateway base URL")
    update_key: Optional[str] = None
    update_secret: Optional[str] = None
    update_auth: Optional[str] = Field(default=None, description="user:password for the update gateway")
    edge_updates: bool = False
    disable_core_updates: bool = False
    request_timeout: int = Field(default=3600, description="Catalog request timeout in seconds")
    update_retry_hours: int = Field(default=24)

    # ============================================
    # Caching
    # ============================================

    flag_cache_ttl_days: int = Field(default=30)

    @field_validator('load_modules', 'disable_plugins', mode='before')
    @classmethod
    def split_csv(cls, v):
        """Allow comma separated values in environment variables"""
        if isinstance(v, str):
            return [item.strip() for item in v.split(',') if item.strip()]
        return v

    def _under_base(self, value: Optional[Path], *parts: str) -> Path:
        return Path(value) if value is not None else self.base_path.joinpath(*parts)

    @property
    def plugins_dir(self) -> Path:
        return self._under_base(self.plugins_path, "plugins")

    @property
    def themes_dir(self) -> Path:
        return self._under_base(self.themes_path, "themes")

    @property
    def modules_dir(self) -> Path:
        return self._under_base(self.modules_path, "modules")

    @property
    def temp_dir(self) -> Path:
        return self._under_base(self.temp_path, "storage", "temp")

    @property
    def archive_dir(self) -> Path:
        return self._under_base(self.archive_path, "storage", "archive")

    @property
    def ledger_db(self) -> Path:
        return self._under_base(self.db_path, "storage", "extensions.sqlite")

    @property
    def app_db(self) -> Path:
        return Path(self.app_db_path) if self.app_db_path is not None else self.ledger_db


# Global config instance
_config: Optional[ExtensionOSConfig] = None


def get_config(force_reload: bool = False) -> ExtensionOSConfig:
    """
    Get global configuration instance (singleton)

    Args:
        force_reload: Force reload configuration from environment

    Returns:
        ExtensionOSConfig instance
    """
    global _config

    if _config is None or force_reload:
        _config = ExtensionOSConfig()

    return _config


def reset_config() -> None:
    """Forget the cached configuration"""
    global _config
    _config = None
