"""
WorkLog Sentinel - Validation Middleware

Validates request bodies against pydantic schemas before business logic.
Failures return 400 with field-level errors and are audited as validation
failures, distinct from server errors.
"""

import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, NoReturn, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from sentinel.middleware.audit_route import client_address, request_actor
from sentinel.models.audit import AuditEventType, FailureKind
from sentinel.schemas.audit import AuditEvent, ValidationMetadata
from sentinel.utils.error_handling import RequestValidationFailed

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)


class SanitizedModel(BaseModel):
    """Request schema base: strips whitespace and script tags from strings."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    @field_validator("*", mode="before")
    @classmethod
    def strip_scripts(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _SCRIPT_RE.sub("", value)
        return value


def _field_errors(error: ValidationError) -> List[Dict[str, str]]:
    return [
        {
            "field": ".".join(str(loc) for loc in item["loc"]) or "body",
            "message": item["msg"],
            "type": item["type"],
        }
        for item in error.errors()
    ]


class ValidationMiddleware:
    """Schema validation stage of the request pipeline."""

    def __init__(self, audit=None):
        self._audit = audit

    async def _reject(self, request: Request, schema: Type[BaseModel], field_errors: List[Dict[str, str]]) -> NoReturn:
        logger.info(f"Validation failed for {request.method} {request.url.path}: {len(field_errors)} error(s)")
        if self._audit is not None:
            request.state.audit_recorded = True
            await self._audit.record(AuditEvent(
                actor=request_actor(request),
                event_type=AuditEventType.VALIDATION_FAILED,
                endpoint=request.url.path,
                method=request.method,
                success=False,
                failure_kind=FailureKind.VALIDATION,
                status_code=400,
                source_address=client_address(request),
                user_agent=request.headers.get("user-agent"),
                metadata=ValidationMetadata(
                    schema_name=schema.__name__,
                    fields=sorted({error["field"] for error in field_errors}),
                ),
            ))
        raise RequestValidationFailed(field_errors)

    async def validate(self, request: Request, schema: Type[SchemaT]) -> SchemaT:
        """
        Parse and validate the JSON body.

        Raises:
            RequestValidationFailed: 400 with field_errors
        """
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            await self._reject(request, schema, [
                {"field": "body", "message": "Body must be valid JSON", "type": "json_invalid"},
            ])

        try:
            return schema.model_validate(body)
        except ValidationError as e:
            await self._reject(request, schema, _field_errors(e))

    def with_validation(
        self,
        schema: Type[SchemaT],
        handler: Callable[[Request, SchemaT], Awaitable[Any]],
    ) -> Callable[[Request], Awaitable[Any]]:
        """Wrap handler(request, payload) so it only runs on a valid body."""

        async def validated(request: Request) -> Any:
            payload = await self.validate(request, schema)
            return await handler(request, payload)

        validated.__name__ = getattr(handler, "__name__", "validated")
        return validated
