"""Holder of the current flag snapshot.

Writers build a new ``FlagSnapshot`` and swap the reference; readers take the
reference once per request and never see a partially applied update.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from delivery_plane.core.errors import NotFoundError, ValidationError
from delivery_plane.core.feature_flags.engine import FlagEvaluationEngine
from delivery_plane.core.feature_flags.loader import (
    load_flags,
    summarize_errors,
    validate_flag_update,
)
from delivery_plane.core.feature_flags.models import FlagDefinition, FlagSnapshot

logger = logging.getLogger(__name__)


class FlagStore:
    """Copy-on-write store for flag definitions."""

    def __init__(self, snapshot: Optional[FlagSnapshot] = None):
        self._snapshot = snapshot if snapshot is not None else FlagSnapshot()
        self._write_lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "FlagStore":
        return cls(load_flags(path))

    @property
    def snapshot(self) -> FlagSnapshot:
        return self._snapshot

    def engine(self) -> FlagEvaluationEngine:
        """Engine bound to the snapshot current at call time."""
        return FlagEvaluationEngine(self._snapshot)

    def get_flag(self, key: str) -> Optional[FlagDefinition]:
        return self._snapshot.get(key)

    def list_flags(self) -> List[FlagDefinition]:
        return list(self._snapshot.flags.values())

    def replace(self, snapshot: FlagSnapshot) -> None:
        with self._write_lock:
            self._snapshot = snapshot
        logger.info(f"Published flag snapshot v{snapshot.version} ({len(snapshot)} flags)")

    def reload(self, path: Union[str, Path]) -> FlagSnapshot:
        """Reload from disk; on failure the current snapshot stays in effect."""
        with self._write_lock:
            snapshot = load_flags(path, version=self._snapshot.version + 1)
            self._snapshot = snapshot
        return snapshot

    def set_flag(
        self,
        key: str,
        enabled: bool,
        rollout_percentage: Optional[int] = None,
    ) -> FlagDefinition:
        """Set flag state at runtime.

        Raises:
            NotFoundError: the key is not defined in the current snapshot
            ValidationError: percentage outside [0, 100]
        """
        with self._write_lock:
            current = self._snapshot.get(key)
            if current is None:
                raise NotFoundError(f"Flag '{key}' not found", {"flag_key": key})
            try:
                updated = validate_flag_update(current, enabled, rollout_percentage)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid update for flag '{key}'",
                    {"flag_key": key, "errors": summarize_errors(e)},
                ) from e
            self._snapshot = self._snapshot.replace(updated)

        logger.info(
            f"Flag {key} set enabled={enabled} rollout={updated.rollout_percentage}%",
            extra={"flag_key": key},
        )
        return updated
