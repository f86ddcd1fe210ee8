"""Runtime settings. Read from SGCLEANUP_* env vars; CLI flags override."""

from __future__ import annotations

import os
from dataclasses import dataclass

from botocore.config import Config

DEFAULT_MAX_IN_FLIGHT = 8
DEFAULT_DELETE_PASSES = 3


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


@dataclass
class Settings:
    """
    Attributes:
        max_in_flight: Most AWS fetch tasks allowed to run at the same time.
        task_timeout: Seconds before a single fetch is abandoned and its region
            marked failed. None waits forever.
        delete_passes: Deletion rounds used to get past groups that reference
            each other.
    """

    max_in_flight: int = DEFAULT_MAX_IN_FLIGHT
    task_timeout: float | None = None
    delete_passes: int = DEFAULT_DELETE_PASSES

    def __post_init__(self) -> None:
        if self.max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {self.max_in_flight}")
        if self.task_timeout is not None and self.task_timeout <= 0:
            raise ValueError(f"task_timeout must be positive, got {self.task_timeout}")
        if self.delete_passes < 1:
            raise ValueError(f"delete_passes must be >= 1, got {self.delete_passes}")

    def client_config(self) -> Config | None:
        """botocore connect and read timeouts matching ``task_timeout``, or None."""
        if self.task_timeout is None:
            return None
        return Config(connect_timeout=self.task_timeout, read_timeout=self.task_timeout)

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            max_in_flight=_env_int("SGCLEANUP_MAX_IN_FLIGHT", DEFAULT_MAX_IN_FLIGHT),
            task_timeout=_env_float("SGCLEANUP_TASK_TIMEOUT"),
            delete_passes=_env_int("SGCLEANUP_DELETE_PASSES", DEFAULT_DELETE_PASSES),
        )
