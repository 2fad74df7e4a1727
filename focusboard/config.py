# Focusboard: configuration
# Override via config.yaml, environment (FOCUSBOARD_DB, FOCUSBOARD_CONFIG) or CLI args.

import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"


@dataclass
class Config:
    """Runtime configuration for the board server."""

    # Storage
    db_path: str = "~/.local/share/focusboard/focusboard.db"

    # HTTP
    host: str = "127.0.0.1"
    port: int = 3000
    api_prefix: str = "/api"

    # Completed tasks are deleted this long after completion
    retention_hours: float = 4.0

    # Background sweeps
    run_scheduler: bool = True
    sweep_interval_seconds: float = 3600.0  # hourly
    focus_check_seconds: float = 15.0

    # Refuse new tasks past the numberOfTasks setting
    enforce_task_limit: bool = False

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)

    def resolve_paths(self):
        """Expand ~ and apply environment overrides."""
        env_db = os.environ.get("FOCUSBOARD_DB")
        if env_db:
            self.db_path = env_db
        self.db_path = str(Path(self.db_path).expanduser())
        if self.api_prefix and not self.api_prefix.startswith("/"):
            self.api_prefix = "/" + self.api_prefix
        self.api_prefix = self.api_prefix.rstrip("/")

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path or os.environ.get("FOCUSBOARD_CONFIG") or CONFIG_PATH)
        known = {f.name for f in fields(cls)}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in known})
            except (OSError, yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning("Ignoring unreadable config %s: %s", cfg_path, e)
                cfg = cls()
        else:
            cfg = cls()
        cfg.resolve_paths()
        return cfg
