from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Maximum trigger input accepted over the API
MAX_INPUT_LENGTH = 65536

_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelRequest(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid", protected_namespaces=()
    )


class ValidateWorkflowRequest(_CamelRequest):
    definition: Dict[str, Any]


class RunWorkflowRequest(_CamelRequest):
    definition: Dict[str, Any]
    input: str = Field("", max_length=MAX_INPUT_LENGTH)
    tenant_id: Optional[str] = Field(None, max_length=255)
    defaults: Dict[str, Any] = Field(default_factory=dict)
    notify_emails: List[str] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(None, gt=0, le=3_600_000)


class AbortRunRequest(_CamelRequest):
    reason: str = Field("aborted", min_length=1, max_length=200)


class AgentRequest(_CamelRequest):
    name: str = Field("", max_length=255)
    tenant_id: Optional[str] = Field(None, max_length=255)
    definition: Dict[str, Any]
    default_model: Optional[str] = Field(None, max_length=255)
    status: Literal["active", "paused"] = "active"
    notify_emails: List[str] = Field(default_factory=list)


class AgentRunRequest(_CamelRequest):
    input: str = Field("", max_length=MAX_INPUT_LENGTH)


class AgentResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    tenant_id: str
    status: str
    default_model: Optional[str] = None
    notify_emails: List[str] = Field(default_factory=list)
    cron_expression: Optional[str] = None
    definition: Dict[str, Any]
