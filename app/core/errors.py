"""
Error Taxonomy and Service Results

Every core operation reports its outcome as a ServiceResult instead of
letting domain exceptions escape. Services raise the typed errors below
internally; the `as_result` decorator folds them into a failed result so
the HTTP layer (or any other caller) only has to look at `success`.

    ValidationError      malformed or missing input, never partially applied
    ConflictError        invariant violated by concurrent or repeated access
    NotFoundError        referenced record does not exist
    TransientInfraError  storage or broadcast channel failure

Author: Khalil Bannouri
Version: 4.0.0
"""

import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PosError(Exception):
    """Base class for all domain errors."""

    code: str = "error"
    http_status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PosError):
    code = "validation_error"
    http_status = 400


class ConflictError(PosError):
    code = "conflict"
    http_status = 409


class NotFoundError(PosError):
    code = "not_found"
    http_status = 404


class TransientInfraError(PosError):
    code = "transient_infra_error"
    http_status = 503


@dataclass
class ServiceResult(Generic[T]):
    """
    Standardized outcome of a core operation.

    Attributes:
        success: Whether the operation was applied
        data: Operation payload on success
        error: The domain error on failure
        error_code: Machine-readable error code
    """
    success: bool
    data: Optional[T] = None
    error: Optional[PosError] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: PosError) -> "ServiceResult[T]":
        return cls(success=False, error=error, error_code=error.code)

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error else None

    def unwrap(self) -> T:
        """Return the payload or raise the stored error."""
        if not self.success:
            raise self.error
        return self.data

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "error": self.error_message,
            "error_code": self.error_code,
        }


def as_result(
    func: Callable[..., Awaitable[Any]]
) -> Callable[..., Awaitable[ServiceResult]]:
    """
    Wrap an async service method so it returns a ServiceResult.

    Domain errors become failed results. Storage errors are logged and
    reported as TransientInfraError. Anything else propagates.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> ServiceResult:
        try:
            return ServiceResult.ok(await func(*args, **kwargs))
        except PosError as e:
            logger.info(f"{func.__qualname__} rejected: {e.code}: {e.message}")
            return ServiceResult.fail(e)
        except SQLAlchemyError as e:
            logger.exception(f"{func.__qualname__} storage failure")
            return ServiceResult.fail(TransientInfraError(f"Storage unavailable: {e.__class__.__name__}"))

    return wrapper
