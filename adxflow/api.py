"""Transport-agnostic request handlers for the execution boundary.

Handlers take request headers, optional pre-verified claims and a body, and
always return a response model. Errors are mapped to an
:class:`ErrorResponse` with an HTTP-style status code instead of escaping.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import pydantic
from pydantic import BaseModel, Field

from .client import OrchestrationClient
from .contracts import ExecutionError, ExecutionStatus
from .engine import WorkflowEngine
from .errors import AuthorizationError, ErrorKind, classify
from .persistence.models import StepRecord
from .tenancy import ClaimsVerifier, TenantContextPropagator

logger = logging.getLogger(__name__)

STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VERSION_CONFLICT: 409,
    ErrorKind.TIMEOUT: 503,
    ErrorKind.TRANSIENT_IO: 503,
    ErrorKind.DEPENDENCY_UNAVAILABLE: 503,
    ErrorKind.ENGINE_FAULT: 500,
    ErrorKind.INTERNAL: 500,
}


class SubmitRequest(BaseModel):
    workflow_type: str = Field(min_length=1)
    version: Optional[str] = None
    tenant_id: Optional[str] = None
    input: Any = None


class SignalRequest(BaseModel):
    name: str = Field(min_length=1)
    payload: Any = None


class SubmitResponse(BaseModel):
    execution_id: str
    status_code: int = 202


class StatusResponse(BaseModel):
    execution_id: str
    workflow_type: str
    version: str
    status: ExecutionStatus
    current_step: Optional[str] = None
    result: Any = None
    error: Optional[ExecutionError] = None
    history: List[StepRecord] = Field(default_factory=list)
    status_code: int = 200


class AcceptedResponse(BaseModel):
    accepted: bool
    status_code: int = 202


class ErrorBody(BaseModel):
    kind: ErrorKind
    message: str


class ErrorResponse(BaseModel):
    status_code: int
    error: ErrorBody


Response = Union[SubmitResponse, StatusResponse, AcceptedResponse, ErrorResponse]
Headers = Optional[Mapping[str, str]]
Claims = Optional[Mapping[str, Any]]


class ExecutionAPI:
    """Submission, status, signal and cancel operations."""

    def __init__(
        self,
        engine: WorkflowEngine,
        propagator: Optional[TenantContextPropagator] = None,
        verifier: Optional[ClaimsVerifier] = None,
    ) -> None:
        self.engine = engine
        self.propagator = propagator or TenantContextPropagator()
        self.verifier = verifier

    async def submit(
        self, headers: Headers, claims: Claims, body: Union[SubmitRequest, Mapping[str, Any]]
    ) -> Response:
        async def operation(client: OrchestrationClient) -> Response:
            request = SubmitRequest.model_validate(body)
            if request.tenant_id is not None and request.tenant_id != client.caller.tenant_id:
                raise AuthorizationError(
                    f"Body tenant {request.tenant_id} does not match "
                    f"caller tenant {client.caller.tenant_id}"
                )
            execution_id = await client.submit(
                request.workflow_type, input=request.input, version=request.version
            )
            return SubmitResponse(execution_id=execution_id)

        return await self._handle(headers, claims, operation)

    async def get(self, headers: Headers, claims: Claims, execution_id: str) -> Response:
        async def operation(client: OrchestrationClient) -> Response:
            snapshot = await client.snapshot(execution_id)
            return StatusResponse(
                execution_id=snapshot.execution_id,
                workflow_type=snapshot.workflow_type,
                version=snapshot.version,
                status=snapshot.status,
                current_step=snapshot.current_step,
                result=snapshot.result,
                error=snapshot.error,
                history=snapshot.history,
            )

        return await self._handle(headers, claims, operation)

    async def signal(
        self,
        headers: Headers,
        claims: Claims,
        execution_id: str,
        body: Union[SignalRequest, Mapping[str, Any]],
    ) -> Response:
        async def operation(client: OrchestrationClient) -> Response:
            request = SignalRequest.model_validate(body)
            accepted = await client.signal(execution_id, request.name, request.payload)
            return AcceptedResponse(accepted=accepted)

        return await self._handle(headers, claims, operation)

    async def cancel(self, headers: Headers, claims: Claims, execution_id: str) -> Response:
        async def operation(client: OrchestrationClient) -> Response:
            return AcceptedResponse(accepted=await client.cancel(execution_id))

        return await self._handle(headers, claims, operation)

    def _client(self, headers: Headers, claims: Claims) -> OrchestrationClient:
        headers = headers or {}
        if claims is None and self.verifier is not None:
            claims = self.verifier.claims_from_headers(headers)
        context = self.propagator.resolve(headers, claims)
        if context.source == "default":
            raise AuthorizationError("Request does not identify a tenant")
        return OrchestrationClient(self.engine, context)

    async def _handle(
        self,
        headers: Headers,
        claims: Claims,
        operation: Callable[[OrchestrationClient], Awaitable[Response]],
    ) -> Response:
        try:
            return await operation(self._client(headers, claims))
        except pydantic.ValidationError as exc:
            return _error_response(ErrorKind.VALIDATION, str(exc))
        except Exception as exc:
            kind = classify(exc)
            if STATUS_CODES[kind] >= 500:
                logger.exception(f"Request failed with {kind.value}")
            else:
                logger.info(f"Request rejected with {kind.value}: {exc}")
            return _error_response(kind, getattr(exc, "message", None) or str(exc))


def _error_response(kind: ErrorKind, message: str) -> ErrorResponse:
    return ErrorResponse(
        status_code=STATUS_CODES[kind], error=ErrorBody(kind=kind, message=message)
    )
