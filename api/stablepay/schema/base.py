"""Shared schema base classes."""

from pydantic import BaseModel, ConfigDict


class ORMModel(BaseModel):
    """Base model that reads attributes from SQLAlchemy rows."""

    model_config = ConfigDict(from_attributes=True)


class CamelModel(BaseModel):
    """Accepts snake_case names and the camelCase aliases emitted by rule parsers."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
