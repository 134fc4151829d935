"""API request models."""
from typing import Any, Dict, List, Literal, Optional

from pydantic import ConfigDict, Field, field_validator, model_validator

from ledgergate.models.base import LGBaseModel

WriteMethod = Literal["POST", "PUT", "PATCH", "DELETE"]
BODY_REQUIRED_METHODS = ("POST", "PUT", "PATCH")


class ProposeChangeRequest(LGBaseModel):
    """A change proposed by an automation front end instead of a proxied request."""

    endpoint: str = Field(min_length=1)
    method: WriteMethod
    body: Optional[Any] = None
    data: Optional[Any] = None  # deprecated alias for body
    description: Optional[str] = None
    changeset_id: Optional[str] = None
    query: Dict[str, str] = Field(default_factory=dict)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _body_for_writes(self):
        if self.method in BODY_REQUIRED_METHODS and self.payload is None:
            raise ValueError("body is required for POST, PUT, and PATCH methods")
        return self

    @property
    def payload(self) -> Any:
        return self.body if self.body is not None else self.data

    @property
    def normalized_path(self) -> str:
        return self.endpoint if self.endpoint.startswith("/") else f"/{self.endpoint}"


class CreateChangesetRequest(LGBaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None


class ResolveRequest(LGBaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, populate_by_name=True)

    resolved_by: Optional[str] = Field(default=None, alias="resolvedBy")
    reason: Optional[str] = None


class AddChangesRequest(LGBaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, populate_by_name=True)

    change_ids: List[str] = Field(alias="changeIds", min_length=1)
