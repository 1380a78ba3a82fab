"""Flag document loader.

Documents are JSON or YAML with a top-level ``flags`` list. The whole document
is rejected when any record is invalid, so a bad edit never half-applies.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from delivery_plane.core.errors import ConfigurationError
from delivery_plane.core.feature_flags.models import FlagDefinition, FlagSnapshot
from delivery_plane.utils.metrics import flag_config_reloads_total

logger = logging.getLogger(__name__)


def summarize_errors(exc: PydanticValidationError) -> List[Dict[str, Any]]:
    """Reduce pydantic errors to JSON-safe location/message pairs."""
    return [
        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
        for err in exc.errors()
    ]


class FlagRecord(BaseModel):
    """Schema of a single flag record in a flag document."""

    model_config = ConfigDict(extra="forbid")

    key: str = Field(min_length=1)
    description: str = ""
    enabled: bool = False
    rollout_percentage: int = Field(default=0, ge=0, le=100)
    allowed_environments: List[str] = Field(default_factory=list)
    user_segments: List[str] = Field(default_factory=list)
    explicit_user_ids: List[str] = Field(default_factory=list)
    variants: Dict[str, int] = Field(default_factory=dict)

    @field_validator("variants")
    @classmethod
    def _weights_sum_to_100(cls, value: Dict[str, int]) -> Dict[str, int]:
        if not value:
            return value
        negative = [name for name, weight in value.items() if weight < 0]
        if negative:
            raise ValueError(f"negative variant weight for {', '.join(negative)}")
        total = sum(value.values())
        if total != 100:
            raise ValueError(f"variant weights sum to {total}, expected 100")
        return value

    def to_definition(self) -> FlagDefinition:
        return FlagDefinition.from_dict(self.model_dump())


class FlagDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    flags: List[Dict[str, Any]] = Field(default_factory=list)


def parse_flag_document(data: Any, version: int = 1) -> FlagSnapshot:
    """Validate a decoded document and build a snapshot.

    Raises:
        ConfigurationError: if any record is invalid or keys repeat.
    """
    if not isinstance(data, Mapping):
        raise ConfigurationError("Flag document must be a mapping with a 'flags' list")
    try:
        document = FlagDocument.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError("Malformed flag document", {"errors": summarize_errors(e)}) from e

    definitions: List[FlagDefinition] = []
    seen = set()
    for index, raw in enumerate(document.flags):
        key = raw.get("key", f"<record {index}>") if isinstance(raw, Mapping) else f"<record {index}>"
        try:
            record = FlagRecord.model_validate(raw)
        except PydanticValidationError as e:
            logger.error(f"Rejecting flag document: invalid flag {key}", extra={"flag_key": key})
            raise ConfigurationError(
                f"Invalid flag definition '{key}'",
                {"flag_key": key, "errors": summarize_errors(e)},
            ) from e
        if record.key in seen:
            logger.error(f"Rejecting flag document: duplicate flag {key}", extra={"flag_key": key})
            raise ConfigurationError(f"Duplicate flag key '{record.key}'", {"flag_key": record.key})
        seen.add(record.key)
        definitions.append(record.to_definition())

    return FlagSnapshot(definitions, version=version)


def _decode(path: Path, content: str) -> Any:
    if path.suffix.lower() in (".yaml", ".yml"):
        return yaml.safe_load(content) or {}
    return json.loads(content)


def load_flags(path: Union[str, Path], version: int = 1) -> FlagSnapshot:
    """Load and validate a flag document from disk."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
        data = _decode(path, content)
    except OSError as e:
        flag_config_reloads_total.labels(status="error").inc()
        raise ConfigurationError(f"Cannot read flag document {path}: {e}") from e
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        flag_config_reloads_total.labels(status="error").inc()
        raise ConfigurationError(f"Cannot decode flag document {path}: {e}") from e

    try:
        snapshot = parse_flag_document(data, version=version)
    except ConfigurationError:
        flag_config_reloads_total.labels(status="rejected").inc()
        raise

    flag_config_reloads_total.labels(status="ok").inc()
    logger.info(f"Loaded {len(snapshot)} feature flags from {path}")
    return snapshot


def dump_flags(snapshot: FlagSnapshot) -> Dict[str, Any]:
    """Serialize a snapshot back into document form."""
    return {"flags": [flag.to_dict() for flag in snapshot.flags.values()]}


def validate_flag_update(
    current: FlagDefinition,
    enabled: bool,
    rollout_percentage: Optional[int],
) -> FlagDefinition:
    """Apply an operator update to a definition through the record schema."""
    data = current.to_dict()
    data["enabled"] = enabled
    if rollout_percentage is not None:
        data["rollout_percentage"] = rollout_percentage
    return FlagRecord.model_validate(data).to_definition()
