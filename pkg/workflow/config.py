# Taskflow workflow engine — configuration
# Override via config.yaml, TASKFLOW_* environment variables or CLI args.

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

CONFIG_PATH = Path(__file__).parent / "config.yaml"

LOG_FORMAT = "%(asctime)s [taskflow] %(levelname)s: %(message)s"


@dataclass
class WorkflowConfig:
    """Runtime configuration for the workflow engine and its server."""

    # Storage
    db_path: str = "~/.local/share/taskflow/workflow.db"
    busy_timeout_ms: int = 5000

    # Logging
    log_level: str = "INFO"

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 3000
    api_secret: str = ""  # empty = mutating routes are open

    def apply_env(self) -> None:
        """Environment variables win over file values."""
        if os.environ.get("TASKFLOW_DB"):
            self.db_path = os.environ["TASKFLOW_DB"]
        if os.environ.get("TASKFLOW_API_SECRET"):
            self.api_secret = os.environ["TASKFLOW_API_SECRET"]
        if os.environ.get("TASKFLOW_LOG_LEVEL"):
            self.log_level = os.environ["TASKFLOW_LOG_LEVEL"]

    def resolve_paths(self) -> None:
        """Expand ~ in the database path."""
        self.db_path = str(self.db_path or "").strip()
        # every transaction opens its own connection, so the store must be a file
        if not self.db_path or self.db_path == ":memory:" or self.db_path.startswith("file:"):
            raise ConfigError(f"db_path must be a database file, got {self.db_path!r}")
        self.db_path = str(Path(self.db_path).expanduser())

    @classmethod
    def load(cls, path: Optional[str] = None) -> "WorkflowConfig":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path or os.environ.get("TASKFLOW_CONFIG") or CONFIG_PATH)
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read config {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"Config {cfg_path} must be a mapping")
            cfg = cls(**{k: v for k, v in data.items() if hasattr(cls, k)})
        else:
            cfg = cls()
        cfg.apply_env()
        cfg.resolve_paths()
        return cfg


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging to stdout."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
