# Copyright (c) Syntropy Systems
"""HTTP generation client used as the scheduler's ``run_one``.

Every failure (transport error, timeout, non-success status, unparsable or
malformed body) comes back as a failure ``Result``; nothing raises into the
scheduler.
"""
from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING

import httpx
from pydantic import Field, ValidationError
from typing_extensions import Self

from promptgrid.models.base import GridBaseModel, JSONValue
from promptgrid.models.pipeline import Result, Usage

if TYPE_CHECKING:
    from collections.abc import Mapping
    from types import TracebackType

    from promptgrid.models.pipeline import ExecutionUnit

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
_TEMPLATE_VAR = re.compile(r"\$\{([^}]+)\}")


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``${name}`` placeholders; unknown names are left as-is."""

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1).strip()
        return variables.get(name, match.group(0))

    return _TEMPLATE_VAR.sub(_sub, template)


class GenerationResponse(GridBaseModel):
    """Body returned by the generation endpoint."""

    success: bool = False
    text: str | None = None
    object_: JSONValue = Field(default=None, alias="object")
    error: str | None = None
    error_type: str | None = Field(default=None, alias="errorType")
    validation_error: str | None = Field(default=None, alias="validationError")
    details: str | None = None
    duration: float | None = None
    finish_reason: str | None = Field(default=None, alias="finishReason")
    usage: Usage | None = None

    @property
    def is_validation_failure(self) -> bool:
        return bool(self.validation_error) or self.error_type == "schema_validation_failed"


class GenerationClient:
    """Posts a unit's rendered payloads to a generation endpoint."""

    endpoint: str
    timeout: float
    defaults: dict[str, JSONValue]
    _client: httpx.AsyncClient

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        defaults: Mapping[str, JSONValue] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint: Full URL of the generation route
            timeout: Request timeout in seconds
            defaults: Body fields sent with every request (e.g. temperature)
            transport: Optional httpx transport, mainly for tests

        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.defaults = {k: v for k, v in (defaults or {}).items() if v is not None}
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def build_request(self, unit: ExecutionUnit) -> dict[str, JSONValue]:
        """Merge variant payloads in dimension order, rendering templates.

        Template variables are pooled from every variant of the unit, so a data
        dimension can fill in a prompt or system template from another one.
        """
        body: dict[str, JSONValue] = dict(self.defaults)
        variables: dict[str, str] = {}
        for variant in unit.variants.values():
            variables.update(variant.variables)

        for variant in unit.variants.values():
            for key, value in variant.payload.items():
                if key == "variables":
                    continue
                if isinstance(value, str):
                    body[key] = render_template(value, variables)
                else:
                    body[key] = value
        return body

    async def __call__(self, unit: ExecutionUnit) -> Result:
        """Run one unit. Always returns a Result."""
        started = time.perf_counter()

        def elapsed() -> float:
            return time.perf_counter() - started

        try:
            response = await self._client.post(self.endpoint, json=self.build_request(unit))
        except httpx.TimeoutException:
            logger.warning("Generation for %s timed out", unit.name)
            return Result.failure(f"Request timed out after {self.timeout:g}s", elapsed())
        except httpx.RequestError as e:
            logger.warning("Generation for %s failed: %s", unit.name, e)
            return Result.failure(f"Connection error: {e}", elapsed())

        try:
            payload = response.json()
        except ValueError:
            return Result.failure(
                f"HTTP {response.status_code}: response was not valid JSON", elapsed()
            )

        try:
            data = GenerationResponse.model_validate(payload)
        except ValidationError as e:
            return Result.failure(f"Malformed response: {e.error_count()} error(s)", elapsed())

        duration = data.duration if data.duration is not None else elapsed()

        if not response.is_success or not data.success:
            error = data.validation_error or data.error or f"HTTP {response.status_code}"
            return Result.failure(
                error,
                duration,
                is_validation_failure=data.is_validation_failure,
                usage=data.usage,
                finish_reason=data.finish_reason,
            )

        output = data.object_ if data.object_ is not None else data.text
        return Result.ok(
            output,
            duration_seconds=duration,
            usage=data.usage,
            finish_reason=data.finish_reason,
        )
