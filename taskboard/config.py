# Task board: configuration
# Override backend and board behaviour via taskboard.yaml or TASKBOARD_CONFIG.

import logging
import os
import yaml
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import List, Optional

from .accessor import TableAccessor
from .schema import BoardMode

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent.parent / "taskboard.yaml"


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


@dataclass
class Config:
    """Runtime configuration for a board client."""

    # Backend: "sqlite" (local file) or "rest" (hosted PostgREST-style service)
    backend: str = "sqlite"
    db_path: str = "~/.local/share/taskboard/board.db"
    rest_url: Optional[str] = None
    api_key_env: str = "TASKBOARD_API_KEY"

    # Board behaviour
    task_table: str = "kanban_tasks"
    board_mode: str = "lanes"
    default_columns: List[str] = field(
        default_factory=lambda: ["To Do", "In Progress", "Done"]
    )

    # Change stream
    poll_interval: float = 2.0       # REST backend only
    subscribe_timeout: float = 10.0

    # Workload preview window (days)
    due_soon_days: int = 7

    log_level: str = "INFO"

    def resolve_paths(self):
        """Expand ~ in local paths."""
        self.db_path = str(Path(self.db_path).expanduser())

    @property
    def mode(self) -> BoardMode:
        return BoardMode.from_str(self.board_mode)

    def validate(self):
        if self.backend not in ("sqlite", "rest"):
            raise ConfigError(f"Unknown backend '{self.backend}' (expected sqlite or rest)")
        if self.backend == "rest" and not self.rest_url:
            raise ConfigError("backend=rest requires rest_url")

    def build_accessor(self) -> TableAccessor:
        """Construct the accessor this config points at."""
        self.validate()
        if self.backend == "rest":
            from .rest import RestTableAccessor

            api_key = os.environ.get(self.api_key_env, "")
            if not api_key:
                raise ConfigError(
                    f"Environment variable {self.api_key_env} is not set.\n"
                    f"Set it:  export {self.api_key_env}=your_service_key"
                )
            return RestTableAccessor(
                self.rest_url, api_key=api_key, poll_interval=self.poll_interval
            )

        from .store import SQLiteTableAccessor

        return SQLiteTableAccessor(self.db_path)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        path = path or os.environ.get("TASKBOARD_CONFIG")
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
            known = {f.name for f in fields(cls)}
            unknown = [k for k in data if k not in known]
            if unknown:
                logger.warning(f"Ignoring unknown config keys in {cfg_path}: {unknown}")
            cfg = cls(**{k: v for k, v in data.items() if k in known})
        else:
            cfg = cls()
        cfg.resolve_paths()
        cfg.validate()
        return cfg
