"""Job type registry.

Maps job type names to their handler, configuration schema and
default timeout/retry budget. The registry is filled at process start
(built-in types, then entry points from installed packages) and frozen
before any worker or dispatcher uses it, so an unknown type is rejected
when a definition or job is created rather than when it runs.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tenant_jobs.scheduler.exceptions import UnknownJobTypeError, ValidationError

logger = logging.getLogger(__name__)

# A handler receives (payload, context) and returns a JSON-serialisable result.
# It may be a coroutine function or a plain function.
Handler = Callable[..., Any]


def _format_error(error: Dict[str, Any]) -> str:
    path = ".".join(["configuration", *(str(part) for part in error["loc"])])
    return f"{path}: {error['msg']}"


@dataclass(frozen=True)
class JobType:
    """Registration record for a job type.

    Attributes:
        name: Unique job type name
        handler: Callable invoked with (payload, context)
        config_schema: Pydantic model the payload must validate against
            (None accepts any payload)
        default_timeout_seconds: Deadline used when a job has no override
        default_max_retries: Retry budget used when a job has no override
        description: Human-readable description
    """

    name: str
    handler: Handler
    config_schema: Optional[Type[BaseModel]] = None
    default_timeout_seconds: int = 300
    default_max_retries: int = 3
    description: str = ""

    @property
    def is_async(self) -> bool:
        return asyncio.iscoroutinefunction(self.handler)

    def validate(self, configuration: Any) -> List[str]:
        """Validate a configuration payload against the schema.

        Returns:
            List of error messages (empty if valid)
        """
        if self.config_schema is None:
            return []
        try:
            self.config_schema.model_validate(configuration)
        except PydanticValidationError as e:
            return [_format_error(error) for error in e.errors()]
        return []


class JobTypeRegistry:
    """Registry of job types.

    Example:
        registry = JobTypeRegistry()

        @registry.job_type("catalog_import", default_timeout_seconds=1800)
        async def import_catalog(payload, context):
            ...

        registry.freeze()
        job_type = registry.get("catalog_import")
    """

    # Entry point group for job types shipped by other packages.
    # Each entry point is a callable taking the registry.
    ENTRY_POINT_GROUP = "tenant_jobs.job_types"

    def __init__(self) -> None:
        self._types: Dict[str, JobType] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(
        self,
        name: str,
        handler: Handler,
        config_schema: Optional[Type[BaseModel]] = None,
        default_timeout_seconds: int = 300,
        default_max_retries: int = 3,
        description: str = "",
    ) -> JobType:
        """Register a job type.

        Raises:
            RuntimeError: If the registry is frozen
            ValueError: If the name is taken or the defaults are invalid
        """
        if self._frozen:
            raise RuntimeError(f"Job type registry is frozen; cannot register {name!r}")
        if not name:
            raise ValueError("Job type name must not be empty")
        if name in self._types:
            raise ValueError(f"Job type already registered: {name}")
        if not callable(handler):
            raise ValueError(f"Handler for {name!r} is not callable")
        if config_schema is not None and not (
            isinstance(config_schema, type) and issubclass(config_schema, BaseModel)
        ):
            raise ValueError(f"config_schema for {name!r} must be a pydantic model")
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be positive")
        if default_max_retries < 0:
            raise ValueError("default_max_retries must not be negative")

        job_type = JobType(
            name=name,
            handler=handler,
            config_schema=config_schema,
            default_timeout_seconds=default_timeout_seconds,
            default_max_retries=default_max_retries,
            description=description,
        )
        self._types[name] = job_type
        logger.debug(f"Registered job type {name}")
        return job_type

    def job_type(self, name: str, **options: Any) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(name, handler, **options)
            return handler

        return decorator

    def freeze(self) -> None:
        """Make the registry read-only."""
        self._frozen = True

    def get(self, name: str) -> JobType:
        """Look up a job type.

        Raises:
            UnknownJobTypeError: If the type is not registered
        """
        try:
            return self._types[name]
        except KeyError:
            raise UnknownJobTypeError(name) from None

    def validate_configuration(self, name: str, configuration: Any) -> JobType:
        """Check that a type exists and its configuration is valid.

        Returns:
            The job type

        Raises:
            UnknownJobTypeError: If the type is not registered
            ValidationError: If the configuration does not match the schema
        """
        job_type = self.get(name)
        errors = job_type.validate(configuration)
        if errors:
            raise ValidationError(f"Invalid configuration for job type {name}", errors)
        return job_type

    def load_entry_points(self) -> int:
        """Load job types registered by installed packages.

        Returns:
            Number of entry points loaded
        """
        from importlib.metadata import entry_points

        loaded = 0
        for ep in entry_points(group=self.ENTRY_POINT_GROUP):
            try:
                register = ep.load()
                register(self)
                loaded += 1
            except Exception as e:
                logger.warning(f"Failed to load job types from entry point {ep.name}: {e}")
        return loaded

    @property
    def names(self) -> List[str]:
        return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __iter__(self) -> Iterator[JobType]:
        return iter(self._types[name] for name in self.names)

    def __len__(self) -> int:
        return len(self._types)


# Global registry instance
_default_registry: Optional[JobTypeRegistry] = None


def get_registry() -> JobTypeRegistry:
    """Get the default job type registry.

    Built on first use with the built-in job types and any entry
    point job types, then frozen.

    Returns:
        The singleton JobTypeRegistry instance
    """
    global _default_registry
    if _default_registry is None:
        from tenant_jobs.scheduler.handlers import register_builtin_job_types

        registry = JobTypeRegistry()
        register_builtin_job_types(registry)
        registry.load_entry_points()
        registry.freeze()
        _default_registry = registry
    return _default_registry


def set_registry(registry: JobTypeRegistry) -> None:
    """Install a custom registry (embedding applications, tests)."""
    global _default_registry
    _default_registry = registry


def reset_registry() -> None:
    """Reset the default job type registry."""
    global _default_registry
    _default_registry = None
