"""Shared schema base classes for API requests and responses."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire models use camelCase keys but accept snake_case from Python callers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ORMModel(CamelModel):
    """Camel-cased model that can be built from SQLAlchemy rows."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)
