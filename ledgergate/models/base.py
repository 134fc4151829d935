"""Shared model config and base types."""
from pydantic import BaseModel, ConfigDict


class LGBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class LGPassthroughModel(BaseModel):
    """Base for payloads that carry downstream fields we do not model."""

    model_config = ConfigDict(extra="allow", str_strip_whitespace=True)
