"""Schema-enforcing gateway over the remote service with timeout/retry policy."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from nexus_bridge.errors import (
    BridgeError,
    InvalidCredentials,
    PipelineNotFound,
    RemoteUnavailable,
    TaskNotFound,
    ValidationError,
)
from nexus_bridge.remote.base import RemoteService
from nexus_bridge.remote.manifest import CAPABILITIES, CapabilitySpec
from nexus_bridge.remote.schemas import RemoteResult

logger = logging.getLogger(__name__)

SECRET_FIELDS = ("password",)
REDACTED = "***"

_NOT_FOUND_ERRORS: dict[str, type[BridgeError]] = {
    "pipeline": PipelineNotFound,
    "task": TaskNotFound,
}


class RemoteGateway:
    """Validate, call and classify remote operations.

    Only ``RemoteUnavailable`` is retried. Rejections and credential failures
    are surfaced on the first answer.
    """

    def __init__(
        self,
        service: RemoteService,
        *,
        timeout_s: float = 30.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.service = service
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    async def call(self, operation: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run ``operation`` and return its data payload, or raise a taxonomy error."""
        spec = CAPABILITIES.get(operation)
        if spec is None:
            raise ValidationError(f"Unknown remote operation: {operation}")
        payload = self._validate(operation, spec, args or {})

        started_at = time.perf_counter()
        last_error: RemoteUnavailable | None = None
        for attempt in range(self.max_retries + 1):
            try:
                result = await asyncio.wait_for(
                    self.service.invoke(operation, payload), timeout=self.timeout_s
                )
            except asyncio.TimeoutError:
                last_error = RemoteUnavailable(
                    f"Remote operation '{operation}' timed out after {self.timeout_s:.2f}s",
                    context={"operation": operation},
                )
            except RemoteUnavailable as exc:
                last_error = RemoteUnavailable(
                    _redact(spec, payload, exc.message), context=exc.context
                )
            else:
                try:
                    data = self._unwrap(operation, spec, payload, result)
                except RemoteUnavailable as exc:
                    last_error = exc
                else:
                    logger.debug(
                        "remote_call event=ok operation=%s attempts=%d duration_ms=%s",
                        operation,
                        attempt + 1,
                        _duration_ms(started_at),
                    )
                    return data

            logger.warning(
                "remote_call event=unavailable operation=%s attempt=%d/%d reason=%s",
                operation,
                attempt + 1,
                self.max_retries + 1,
                last_error.message,
            )
            if attempt < self.max_retries and self.backoff_s > 0:
                await asyncio.sleep(self.backoff_s)

        if last_error is None:
            raise RemoteUnavailable(f"Remote operation '{operation}' failed with unknown error")
        raise last_error

    @staticmethod
    def _validate(operation: str, spec: CapabilitySpec, args: dict[str, Any]) -> dict[str, Any]:
        try:
            model = spec.input_model.model_validate(args)
        except PydanticValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise ValidationError(
                f"Invalid arguments for '{operation}': {', '.join(fields) or 'payload'}",
                context={"operation": operation, "fields": fields},
            ) from exc
        return model.model_dump(mode="json")

    @staticmethod
    def _unwrap(
        operation: str, spec: CapabilitySpec, payload: dict[str, Any], result: RemoteResult
    ) -> dict[str, Any]:
        if result.success:
            return dict(result.data)

        message = _redact(spec, payload, result.error or f"Remote operation '{operation}' failed")
        context = {"operation": operation}
        if result.error_kind == "unavailable":
            raise RemoteUnavailable(message, context=context)
        if result.error_kind == "invalid_credentials":
            raise InvalidCredentials(message, context=context)
        if result.error_kind == "not_found" and spec.category in _NOT_FOUND_ERRORS:
            raise _NOT_FOUND_ERRORS[spec.category](message, context=context)
        raise spec.rejection(message, context=context)


def _redact(spec: CapabilitySpec, payload: dict[str, Any], text: str) -> str:
    """Mask secret argument values echoed back in remote error text."""
    if not spec.sensitive:
        return text
    for name in SECRET_FIELDS:
        value = payload.get(name)
        if isinstance(value, str) and value:
            text = text.replace(value, REDACTED)
    return text


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
