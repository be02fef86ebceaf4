"""Builder metadata codec: the JSON document kept in the builder image label."""

from __future__ import annotations

import json

from jsonschema import ValidationError
from pydantic import ValidationError as ModelValidationError

from cnb_pack.errors import MetadataError
from cnb_pack.types import BuilderMetadata
from cnb_pack.validator import validate_builder_metadata

METADATA_LABEL = "io.buildpacks.builder.metadata"
STACK_LABEL = "io.buildpacks.stack.id"


def encode(metadata: BuilderMetadata) -> str:
    """Serialize *metadata* to the label value (compact JSON, aliases applied)."""
    return json.dumps(metadata.model_dump(by_alias=True), separators=(",", ":"))


def decode(label: str) -> BuilderMetadata:
    """Parse a label value; an empty string yields empty metadata.

    Raises MetadataError when the value is not JSON or does not match the
    metadata schema.
    """
    if not label:
        return BuilderMetadata()
    try:
        data = json.loads(label)
    except json.JSONDecodeError as exc:
        raise MetadataError(f"metadata is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MetadataError("metadata must be a JSON object")
    try:
        validate_builder_metadata(data)
        return BuilderMetadata.model_validate(data)
    except (ValidationError, ModelValidationError) as exc:
        raise MetadataError(f"metadata does not match schema: {exc}") from exc
