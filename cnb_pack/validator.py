"""Schema validation for the documents stored on builder images."""

from __future__ import annotations

import json
from importlib import resources

from jsonschema import Draft202012Validator

# --- Schema loaders ---------------------------------------------------------


def _load_schema(package: str, resource_name: str) -> dict:
    with resources.files(package).joinpath(resource_name).open("r", encoding="utf-8") as f:
        return json.load(f)


def _builder_metadata_schema() -> dict:
    return _load_schema("cnb_pack.schema", "builder.metadata.schema.json")


# --- Public validators ------------------------------------------------------


def validate_builder_metadata(data: dict) -> None:
    Draft202012Validator(_builder_metadata_schema()).validate(data)
