"""Configuration loading with environment variable substitution."""

import json
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")

DEFAULT_EXCLUDED_DIRS = [
    ".git",
    "node_modules",
    "dist",
    "build",
    ".next",
    ".nuxt",
    "target",
    "bin",
    "obj",
    ".claude",
    "__pycache__",
    ".venv",
    "venv",
    "env",
    ".env",
    "coverage",
    ".pytest_cache",
    ".mypy_cache",
]


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR_NAME} patterns with environment variables."""
    if isinstance(value, str):
        def replace(match: re.Match[str]) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(f"Environment variable {var_name} is not set")
            return env_value

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(v) for v in value]
    return value


class AdapterMode(str, Enum):
    """Where a tenant's commands, files and sessions live."""

    NATIVE = "native"
    SANDBOXED = "sandboxed"


class DockerConfig(BaseModel):
    """Container engine connection settings."""

    base_url: str | None = None  # None uses DOCKER_HOST / the default socket
    timeout_seconds: int = 60
    max_workers: int = 16
    stream_workers: int = 64  # only for transports that cannot be read without blocking


class SandboxConfig(BaseModel):
    """Per-tenant sandbox container settings."""

    image: str = "sandbox-runtime:latest"
    command: list[str] = Field(default_factory=lambda: ["sleep", "infinity"])
    name_prefix: str = "sandbox-"
    label_prefix: str = "sandbox-core"
    data_root: str = "./data/workspaces"
    mount_path: str = "/workspace"
    user: str | None = None
    network_mode: str = "bridge"
    default_tier: str = "free"
    environment: dict[str, str] = Field(default_factory=dict)
    cap_add: list[str] = Field(
        default_factory=lambda: ["CHOWN", "SETUID", "SETGID", "DAC_OVERRIDE", "FOWNER", "KILL"]
    )
    ready_timeout_seconds: float = 120
    stop_timeout_seconds: int = 10
    remove_timeout_seconds: int = 10
    health_check_ttl_seconds: int = 60
    pid_dir: str = "/tmp"


class TimeoutsConfig(BaseModel):
    """Per-operation-class timeouts in seconds."""

    read: float = 5
    write: float = 5
    delete: float = 3
    tree: float = 10
    stat: float = 3
    mkdir: float = 3
    exists: float = 3
    listing: float = 5
    sessions: float = 10
    exec: float = 600  # 0 disables the execution timeout
    stream_idle: float = 300
    default: float = 3

    def for_operation(self, operation: str) -> float:
        """Get the timeout for an operation class, falling back to the default."""
        value = getattr(self, operation, None)
        if isinstance(value, (int, float)):
            return float(value)
        return float(self.default)


class FilesConfig(BaseModel):
    """File operation limits."""

    max_file_size: int = 50 * 1024 * 1024
    tree_max_depth: int = 3
    tree_max_entries: int = 1000
    excluded_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_DIRS))
    write_chunk_size: int = 48 * 1024


class SessionsConfig(BaseModel):
    """Transcript discovery settings."""

    projects_subdir: str = ".claude/projects"
    default_limit: int = 50
    summary_length: int = 50


class ReaperConfig(BaseModel):
    """Idle reaper thresholds."""

    enabled: bool = True
    interval_seconds: float = 1800
    stop_after_seconds: float = 2 * 3600
    destroy_after_seconds: float = 24 * 3600
    retain_volume: bool = True


class StatsConfig(BaseModel):
    """Stats poller cadence."""

    enabled: bool = False
    interval_seconds: float = 60


class AdaptersConfig(BaseModel):
    """Adapter mode selection."""

    default_mode: AdapterMode = AdapterMode.NATIVE
    tenants: dict[str, AdapterMode] = Field(default_factory=dict)

    def mode_for(self, tenant_id: str) -> AdapterMode:
        """Resolve the adapter mode for a tenant."""
        return self.tenants.get(tenant_id, self.default_mode)


class DatabaseConfig(BaseModel):
    """Sandbox registry database."""

    backend: str = "sqlite"
    path: str | None = None  # ":memory:" for an in-memory database


class LoggingConfig(BaseModel):
    """Logging output."""

    level: str = "INFO"
    format: str = "json"  # json | text


class Config(BaseModel):
    """Main configuration for sandbox-core."""

    docker: DockerConfig = Field(default_factory=DockerConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    files: FilesConfig = Field(default_factory=FilesConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    reaper: ReaperConfig = Field(default_factory=ReaperConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    adapters: AdaptersConfig = Field(default_factory=AdaptersConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML or JSON file."""
        path = Path(path)
        with path.open() as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)

        data = substitute_env_vars(data or {})
        return cls.model_validate(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Load configuration from a dictionary."""
        data = substitute_env_vars(data)
        return cls.model_validate(data)
