"""Built-in job types.

* ``webhook``: call an arbitrary HTTP endpoint.
* ``api_call``: call the platform's internal API with the configured token.
* ``cleanup``: prune the engine's own history tables.

HTTP status classes map onto the retry policy: 5xx, 408, 429 and
transport errors are transient, other 4xx responses are permanent.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Literal, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tenant_jobs.config import TenantJobsConfig, get_config
from tenant_jobs.database.repositories import RepositoryFactory
from tenant_jobs.scheduler.exceptions import PermanentHandlerError, TransientHandlerError
from tenant_jobs.scheduler.registry import JobTypeRegistry
from tenant_jobs.scheduler.schedule import utcnow

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}

ModelT = TypeVar("ModelT", bound=BaseModel)

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]


class _HttpRequestConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: HttpMethod = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class WebhookConfig(_HttpRequestConfig):
    """Configuration of the ``webhook`` job type."""

    url: str = Field(pattern=r"^https?://")
    body: Union[Dict[str, Any], List[Any], str, None] = None
    # Per-request timeout in seconds; the job deadline still applies
    timeout: Optional[float] = Field(default=None, ge=1, le=600)


class ApiCallConfig(_HttpRequestConfig):
    """Configuration of the ``api_call`` job type."""

    endpoint: str = Field(min_length=1, pattern=r"^/")
    payload: Union[Dict[str, Any], List[Any], None] = None


class CleanupConfig(BaseModel):
    """Configuration of the ``cleanup`` job type."""

    model_config = ConfigDict(extra="forbid")

    target: Literal["jobs", "executions"]
    older_than_days: Optional[int] = Field(default=None, ge=1)
    max_records: Optional[int] = Field(default=None, ge=1, le=100000)


def _parse(model: Type[ModelT], payload: Dict[str, Any]) -> ModelT:
    """Parse a stored payload into its model.

    Raises:
        PermanentHandlerError: If the payload does not validate
    """
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise PermanentHandlerError(f"Invalid {model.__name__}: {e.error_count()} error(s)") from e


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _response_result(response: httpx.Response) -> Dict[str, Any]:
    """Classify a response and build the job result.

    Raises:
        TransientHandlerError: For 5xx, 408 and 429 responses
        PermanentHandlerError: For other 4xx responses
    """
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        message = f"HTTP {status} from {e.request.method} {e.request.url}"
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            raise TransientHandlerError(message) from e
        raise PermanentHandlerError(message) from e

    return {
        "status_code": response.status_code,
        "headers": dict(response.headers),
        "body": _decode_body(response),
    }


async def _send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Any = None,
) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"headers": headers or {}}
    if isinstance(body, str):
        kwargs["content"] = body
    elif body is not None:
        kwargs["json"] = body

    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientHandlerError(f"Request to {url} timed out") from e
    except httpx.TransportError as e:
        raise TransientHandlerError(f"Request to {url} failed: {e}") from e

    return _response_result(response)


def make_webhook_handler(
    config_provider: Callable[[], TenantJobsConfig] = get_config,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Callable[..., Any]:
    """Build the ``webhook`` handler."""

    async def webhook(payload: Dict[str, Any], context: Any) -> Dict[str, Any]:
        config = _parse(WebhookConfig, payload)
        http = config_provider().http
        timeout = min(config.timeout or http.request_timeout, max(context.remaining(), 1.0))

        async with httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": http.user_agent},
            transport=transport,
        ) as client:
            logger.debug(f"Webhook {config.method} {config.url} for job {context.job_id}")
            return await _send(client, config.method, config.url, config.headers, config.body)

    return webhook


def make_api_call_handler(
    config_provider: Callable[[], TenantJobsConfig] = get_config,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Callable[..., Any]:
    """Build the ``api_call`` handler."""

    async def api_call(payload: Dict[str, Any], context: Any) -> Dict[str, Any]:
        config = _parse(ApiCallConfig, payload)
        http = config_provider().http
        headers = {"User-Agent": http.user_agent, "Content-Type": "application/json"}
        if http.api_token:
            headers["Authorization"] = f"Bearer {http.api_token}"
        if context.tenant_id:
            headers["X-Tenant-Id"] = context.tenant_id

        async with httpx.AsyncClient(
            base_url=http.api_base_url,
            headers=headers,
            timeout=min(http.request_timeout, max(context.remaining(), 1.0)),
            transport=transport,
        ) as client:
            return await _send(client, config.method, config.endpoint, config.headers, config.payload)

    return api_call


def make_cleanup_handler(
    session_factory: Optional[Callable[[], Any]] = None,
    config_provider: Callable[[], TenantJobsConfig] = get_config,
) -> Callable[..., Any]:
    """Build the ``cleanup`` handler.

    Args:
        session_factory: Transaction scope factory (default: global database)
        config_provider: Returns the configuration at call time
    """

    def cleanup(payload: Dict[str, Any], context: Any) -> Dict[str, Any]:
        if session_factory is None:
            from tenant_jobs.database.connection import get_db_session

            scope = get_db_session
        else:
            scope = session_factory

        config = _parse(CleanupConfig, payload)
        target = config.target
        older_than_days = config.older_than_days or config_provider().retention.job_history_days
        limit = config.max_records
        before = utcnow() - timedelta(days=older_than_days)

        context.check_cancelled()
        with scope() as session:
            repos = RepositoryFactory(session)
            if target == "jobs":
                deleted = repos.jobs.delete_terminal_before(before, limit)
            else:
                deleted = repos.executions.delete_closed_before(before, limit)

        logger.info(f"Cleanup removed {deleted} {target} older than {older_than_days} days")
        return {"target": target, "deleted": deleted, "before": before.isoformat()}

    return cleanup


def register_builtin_job_types(
    registry: JobTypeRegistry,
    config_provider: Callable[[], TenantJobsConfig] = get_config,
    session_factory: Optional[Callable[[], Any]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Register the built-in job types on ``registry``.

    Args:
        registry: Registry to fill (must not be frozen)
        config_provider: Returns the configuration at call time
        session_factory: Transaction scope factory for the cleanup type
        transport: httpx transport override for the HTTP types
    """
    registry.register(
        "webhook",
        make_webhook_handler(config_provider, transport),
        config_schema=WebhookConfig,
        default_timeout_seconds=60,
        default_max_retries=5,
        description="Call an HTTP endpoint",
    )
    registry.register(
        "api_call",
        make_api_call_handler(config_provider, transport),
        config_schema=ApiCallConfig,
        default_timeout_seconds=120,
        default_max_retries=3,
        description="Call the platform's internal API",
    )
    registry.register(
        "cleanup",
        make_cleanup_handler(session_factory, config_provider),
        config_schema=CleanupConfig,
        default_timeout_seconds=600,
        default_max_retries=1,
        description="Prune finished jobs or executions",
    )
