"""
Unified exception handling for API routes.

This module provides a decorator that handles exceptions consistently across all
API route handlers, mapping codejudge exceptions to appropriate HTTP status codes.
"""
import functools
from typing import Callable, TypeVar

from fastapi import HTTPException

from codejudge.exceptions import (
    ExecutorError,
    JobNotFoundError,
    OverloadedError,
    SchedulerNotInitializedError,
    ValidationError,
)

F = TypeVar("F", bound=Callable)

RETRY_AFTER_SECONDS = "1"


def handle_route_exceptions(func: F) -> F:
    """
    Decorator that provides unified exception handling for API route handlers.

    Maps codejudge exceptions to appropriate HTTP status codes:
    - 404: JobNotFoundError (resource not found)
    - 400: ValidationError, including UnsupportedLanguageError and InvalidLimitsError
    - 503: OverloadedError (with Retry-After), SchedulerNotInitializedError
    - 500: All other exceptions (internal server error)

    HTTPException instances are re-raised as-is to preserve custom status codes
    set within route handlers.

    Usage:
        @router.post("/my_endpoint")
        @handle_route_exceptions
        async def my_endpoint():
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except OverloadedError as e:
            # Backpressure: tell the client to come back shortly
            raise HTTPException(
                status_code=503,
                detail={"error": e.message, **e.details},
                headers={"Retry-After": RETRY_AFTER_SECONDS},
            )
        except SchedulerNotInitializedError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=400, detail={"error": e.message, **e.details})
        except ExecutorError as e:
            raise HTTPException(status_code=500, detail=str(e))
        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return wrapper
