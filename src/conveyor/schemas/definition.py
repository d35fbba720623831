"""Pydantic schemas for pipeline definitions."""

from typing import Literal
from pydantic import BaseModel


class DefinitionValidate(BaseModel):
    content: str
    format: Literal["toml", "yaml", "json"] = "toml"


class StageGraphNode(BaseModel):
    name: str
    depends_on: list[str]
    depth: int


class DefinitionValidateResponse(BaseModel):
    name: str
    version: str
    schema_version: int
    stages: list[StageGraphNode]
    order: list[str]
    groups: list[list[str]]
