# wordslop_lobby/core/response.py

import functools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, Optional, TypeVar

from wordslop_lobby.core.errors import LobbyError, StoreUnavailable
from wordslop_lobby.logging import get_logger, LogSection, LogSubsection

logger = get_logger(__name__)

T = TypeVar("T")


def make_meta() -> Dict[str, str]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "trace_id": str(uuid.uuid4()),
    }


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Success/failure envelope returned by every caller-facing operation."""

    status: str
    message: str
    data: Optional[T] = None
    code: Optional[str] = None
    error: Optional[LobbyError] = None
    meta: Dict[str, str] = field(default_factory=make_meta)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.data

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status,
            "message": self.message,
            "data": self.data,
            "meta": self.meta,
        }
        if self.error is not None:
            payload["code"] = self.code
            payload["details"] = self.error.details
        return payload


def success(data=None, message="Operation completed") -> OperationResult:
    return OperationResult(status="ok", message=message, data=data)


def error(exc: LobbyError) -> OperationResult:
    return OperationResult(status="error", message=exc.message, code=exc.code, error=exc)


def as_result(func):
    """
    Wraps a coroutine so that it returns an OperationResult instead of raising.

    LobbyError subclasses become error results as-is; anything else is logged
    and reported as StoreUnavailable, so the caller never gets an exception.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return success(await func(*args, **kwargs))
        except LobbyError as exc:
            return error(exc)
        except Exception as exc:
            logger.error(
                section=LogSection.SYSTEM,
                subsection=LogSubsection.SYSTEM.ERROR,
                message=f"Unexpected failure in {func.__qualname__}: {exc!r}"
            )
            return error(StoreUnavailable(str(exc) or None))

    return wrapper
