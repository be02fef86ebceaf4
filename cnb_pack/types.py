"""Shared Pydantic models: builder metadata as stored in the image label."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BuildpackMetadata(BaseModel):
    id: str
    version: str
    latest: bool = False


class GroupBuildpack(BaseModel):
    id: str
    version: str = ""


class GroupMetadata(BaseModel):
    buildpacks: list[GroupBuildpack] = Field(default_factory=list)

    @field_validator("buildpacks", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        return [] if value is None else value


class RunImageMetadata(BaseModel):
    image: str = ""
    mirrors: list[str] = Field(default_factory=list)

    @field_validator("mirrors", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        return [] if value is None else value


class StackMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_image: RunImageMetadata = Field(default_factory=RunImageMetadata, alias="runImage")

    @field_validator("run_image", mode="before")
    @classmethod
    def null_as_default(cls, value):
        return {} if value is None else value


class BuilderMetadata(BaseModel):
    """Everything the ``io.buildpacks.builder.metadata`` label carries.

    Attributes
    ----------
    buildpacks: list[BuildpackMetadata]
        Buildpacks present in the builder, in declaration order.
    groups: list[GroupMetadata]
        Detection order; each group is tried in turn by the detector.
    stack: StackMetadata
        Run image (and its mirrors) the builder was created for.
    """

    buildpacks: list[BuildpackMetadata] = Field(default_factory=list)
    groups: list[GroupMetadata] = Field(default_factory=list)
    stack: StackMetadata = Field(default_factory=StackMetadata)

    # Documents written by other tooling may carry `null` for empty values.
    @field_validator("buildpacks", "groups", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        return [] if value is None else value

    @field_validator("stack", mode="before")
    @classmethod
    def null_as_default(cls, value):
        return {} if value is None else value
