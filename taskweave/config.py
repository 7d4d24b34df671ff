from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

DEFAULT_FLUSH_INTERVAL_S = 0.01
DEFAULT_MODE = "code"
DEFAULT_STORAGE_DIR = ".taskweave"


@dataclass(slots=True)
class EngineConfig:
    flush_interval_s: float = DEFAULT_FLUSH_INTERVAL_S
    default_mode: str = DEFAULT_MODE
    storage_dir: str = DEFAULT_STORAGE_DIR
    reuse_empty_subtasks: bool = False
    autosave: bool = True

    def __post_init__(self) -> None:
        if self.flush_interval_s <= 0:
            raise ValueError("flush_interval_s must be positive")
        if not self.default_mode:
            raise ValueError("default_mode must be non-empty")
        if not self.storage_dir:
            raise ValueError("storage_dir must be non-empty")


class ProjectSettings(BaseModel):
    """Project-wide settings the hierarchy manager consults."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    auto_approve_locked: bool = False
    main_model: str | None = None
    default_worktree_base_branch: str | None = None


__all__ = [
    "DEFAULT_FLUSH_INTERVAL_S",
    "DEFAULT_MODE",
    "DEFAULT_STORAGE_DIR",
    "EngineConfig",
    "ProjectSettings",
]
