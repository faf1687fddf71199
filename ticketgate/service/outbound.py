from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, TypeVar

import httpx
from redis.exceptions import RedisError

from ticketgate.logging import get_logger
from ticketgate.service.errors import DownstreamUnavailableError, ServiceError

logger = get_logger(__name__)

T = TypeVar("T")


async def call_with_timeout(
    awaitable: Awaitable[T], *, timeout: float, collaborator: str
) -> T:
    """Await a collaborator call, turning timeouts and transport errors into 503s.

    Typed service errors raised by the collaborator pass through untouched.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except ServiceError:
        raise
    except asyncio.TimeoutError as exc:
        logger.warning("downstream_timeout", collaborator=collaborator, timeout=timeout)
        raise DownstreamUnavailableError(
            f"{collaborator} timed out", detail={"collaborator": collaborator}
        ) from exc
    except (httpx.HTTPError, OSError, RuntimeError) as exc:
        logger.warning(
            "downstream_failed", collaborator=collaborator, error=str(exc)
        )
        raise DownstreamUnavailableError(
            f"{collaborator} unavailable", detail={"collaborator": collaborator}
        ) from exc


@asynccontextmanager
async def store_errors(collaborator: str) -> AsyncIterator[None]:
    """Report a failing ticket or session store as a 503 instead of a 500."""
    try:
        yield
    except ServiceError:
        raise
    except (RedisError, OSError, RuntimeError) as exc:
        logger.error("store_failed", collaborator=collaborator, error_type=type(exc).__name__)
        raise DownstreamUnavailableError(
            f"{collaborator} unavailable", detail={"collaborator": collaborator}
        ) from exc
