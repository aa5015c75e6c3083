"""Configuration management for Compose Guardian."""

from functools import lru_cache
from pathlib import PurePosixPath

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Compose project on the host
    compose_folder_path: str = Field(
        default="/DATA/AppData/casaos/apps/yundera",
        description="Directory on the host holding the docker-compose project",
    )

    # Host bridge
    host_address: str | None = Field(
        default=None, description="Explicit host address; auto-detected when unset"
    )
    host_user: str = Field(default="root", description="SSH user on the host")
    ssh_key_path: str = Field(
        default="/app/container_ssh_key", description="Private key used for host SSH"
    )
    authorized_keys_path: str = Field(
        default="/host_ssh/authorized_keys",
        description="Bind-mounted path of the host's authorized_keys file",
    )
    ssh_key_marker: str = Field(
        default="local-admin-access",
        description="Comment tag identifying keys installed by this agent",
    )
    ssh_connect_timeout: int = Field(default=30, description="SSH ConnectTimeout (seconds)")
    host_connect_attempts: int = Field(
        default=100, description="Reachability probes before giving up at startup"
    )
    host_connect_retry_delay: float = Field(
        default=3.0, description="Seconds between reachability probes"
    )
    route_table_path: str = Field(
        default="/proc/net/route", description="Kernel route table used for gateway detection"
    )

    # State store
    state_dir: str = Field(default="/app/state", description="Directory for JSON state documents")

    # Self-check
    reference_dir: str = Field(
        default="/app/template-setup/root", description="Reference file tree"
    )
    target_dir: str = Field(default="/app/data", description="Target file tree to reconcile")
    ignore_file_name: str = Field(
        default=".ignore", description="Ignore-pattern file inside the target tree"
    )
    script_list_path: str = Field(
        default="scripts/self-check/scripts.list",
        description="Script list file, relative to the compose folder",
    )
    script_dir: str = Field(
        default="scripts/self-check", description="Script directory, relative to the compose folder"
    )
    script_wrapper: str | None = Field(
        default="scripts/tools/execute_script_with_log.sh",
        description="Wrapper that runs a script with logging, relative to the compose folder",
    )
    script_timeout_seconds: float = Field(default=1200, description="Per-script timeout")

    # Updates
    update_log_path: str = Field(
        default="/tmp/docker_update.log", description="Host log file of the detached update"
    )
    fallback_update_timeout: float = Field(
        default=120, description="Timeout of the synchronous fallback update"
    )
    update_command_timeout: float = Field(
        default=60, description="Timeout of each docker inspect or listing command"
    )
    update_pull_timeout: float = Field(
        default=600, description="Timeout of each docker pull during checks and updates"
    )

    # Scheduler
    check_hour: int = Field(default=3, ge=0, le=23, description="Hour of the daily check")
    check_minute: int = Field(default=0, ge=0, le=59, description="Minute of the daily check")

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write JSON logs to a file")
    log_file_path: str = Field(
        default="/app/state/logs/compose-guardian.log", description="Rotating log file"
    )
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024, description="Rotate at this size")
    log_file_backup_count: int = Field(default=5, description="Rotated files to keep")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    def _on_host(self, relative: str) -> str:
        return str(PurePosixPath(self.compose_folder_path) / relative)

    @property
    def script_list_file(self) -> str:
        """Absolute host path of the script list."""
        return self._on_host(self.script_list_path)

    @property
    def script_directory(self) -> str:
        """Absolute host path of the self-check scripts."""
        return self._on_host(self.script_dir)

    @property
    def script_wrapper_file(self) -> str | None:
        """Absolute host path of the script wrapper, if one is configured."""
        return self._on_host(self.script_wrapper) if self.script_wrapper else None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
