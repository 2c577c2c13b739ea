"""Configuration for SiteBox."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings from environment (SITEBOX_* variables or .env)."""

    model_config = SettingsConfigDict(
        env_prefix="SITEBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_format: Literal["json", "console"] = "console"
    log_level: str = "INFO"

    # Filesystem layout
    home_dir: Path = Field(default_factory=lambda: Path.home() / "SiteBox")

    # Port registry
    port_range_start: int = 8000
    port_range_end: int = 9000
    reserved_ports: list[int] = Field(default_factory=lambda: [8080, 8443, 8888, 9000])
    bind_test_host: str = "127.0.0.1"

    # Native backend
    php_binary: str = "php"
    # Per-version runtimes, e.g. {"8.1": "/usr/bin/php8.1"}
    php_binaries: dict[str, str] = Field(default_factory=dict)
    require_php_version: bool = False
    loopback_host: str = "127.0.0.1"
    stop_grace_seconds: float = 5.0
    liveness_timeout: float = 0.5

    # Readiness probe
    probe_initial_delay: float = 1.0
    probe_max_attempts: int = 10
    probe_interval: float = 0.5
    probe_timeout: float = 1.0

    # Installer
    install_timeout: float = 30.0

    # Database engines
    engine_start_attempts: int = 30
    engine_start_interval: float = 1.0
    db_connect_attempts: int = 5
    db_connect_interval: float = 1.0
    db_command_timeout: float = 10.0
    mysql_base_port: int = 3306
    mariadb_base_port: int = 3307
    fallback_when_not_installed: bool = False
    engine_downloads: dict[str, dict[str, str]] = Field(
        default_factory=lambda: {
            "mysql": {
                "8.0": "https://cdn.mysql.com/Downloads/MySQL-8.0/mysql-8.0.37-linux-glibc2.28-x86_64.tar.xz",
                "8.4": "https://cdn.mysql.com/Downloads/MySQL-8.4/mysql-8.4.0-linux-glibc2.28-x86_64.tar.xz",
                "5.7": "https://cdn.mysql.com/Downloads/MySQL-5.7/mysql-5.7.44-linux-glibc2.12-x86_64.tar.gz",
            },
            "mariadb": {
                "11.2": "https://archive.mariadb.org/mariadb-11.2.5/bintar-linux-systemd-x86_64/mariadb-11.2.5-linux-systemd-x86_64.tar.gz",
                "10.11": "https://archive.mariadb.org/mariadb-10.11.10/bintar-linux-systemd-x86_64/mariadb-10.11.10-linux-systemd-x86_64.tar.gz",
                "10.6": "https://archive.mariadb.org/mariadb-10.6.20/bintar-linux-systemd-x86_64/mariadb-10.6.20-linux-systemd-x86_64.tar.gz",
            },
        }
    )

    # Container backend
    docker_label_prefix: str = "sitebox"
    container_db_images: dict[str, str] = Field(
        default_factory=lambda: {"mysql": "mysql:{version}", "mariadb": "mariadb:{version}"}
    )
    container_app_image: str = "wordpress:php{php_version}-apache"
    container_db_wait_attempts: int = 30
    container_db_wait_interval: float = 2.0
    container_stop_timeout: int = 10
    container_watch_interval: float = 2.0
    docker_max_workers: int = 5

    # Application files
    wordpress_download_url: str = "https://wordpress.org/wordpress-{version}.zip"
    wordpress_latest_url: str = "https://wordpress.org/latest.zip"
    sqlite_plugin_url: str = (
        "https://downloads.wordpress.org/plugin/sqlite-database-integration.latest-stable.zip"
    )
    download_timeout: float = 120.0

    # URL mode: localhost URLs when enabled, custom domains (hosts file) otherwise
    non_admin_mode: bool = True

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @property
    def sites_dir(self) -> Path:
        return self.home_dir / "sites"

    @property
    def php_dir(self) -> Path:
        return self.home_dir / "php"

    @property
    def engines_dir(self) -> Path:
        return self.home_dir / "engines"

    @property
    def temp_dir(self) -> Path:
        return self.home_dir / "temp"

    @property
    def port_table_path(self) -> Path:
        return self.home_dir / "port-allocations.json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
