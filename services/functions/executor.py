"""
=====================================================
Dynamic AI Calling Platform - Function Executor
=====================================================
Runs a function by name with a per-function timeout and linear-backoff
retries on transient failures. Never raises: every outcome, including
exhausted retries and unknown names, is a FunctionResult.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from loguru import logger

from .function_base import (
    FunctionContext,
    FunctionNotFound,
    FunctionResult,
    TransientFunctionError,
)
from .registry import FunctionRegistry


RETRYABLE_ERRORS = (
    TransientFunctionError,
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TransportError,
)


class FunctionExecutor:
    """
    Execute registered functions

    - attempts = max_retries (function's own, else default)
    - sleep backoff * attempt between attempts
    - business negatives (success=False results) return immediately
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def execute(self, name: str, args: Optional[Dict[str, Any]],
                      context: FunctionContext) -> FunctionResult:
        """
        Run one function call

        Args:
            name: Function name from the model
            args: Parsed arguments
            context: Call-scoped context

        Returns:
            FunctionResult (never raises)
        """
        try:
            function = self.registry.resolve(name)
        except FunctionNotFound as e:
            logger.warning(f"Functions: {e}")
            return FunctionResult(success=False, error=str(e), attempts=0)

        args = args or {}
        timeout = function.timeout_seconds or self.timeout_seconds
        attempts = max(1, function.max_retries or self.max_retries)
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(function.invoke(args, context), timeout=timeout)
            except RETRYABLE_ERRORS as e:
                last_error = e
                reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
                logger.warning(f"Functions: {name} attempt {attempt}/{attempts} failed: {reason}")
                if attempt < attempts:
                    await self._sleep(self.backoff_seconds * attempt)
                continue
            except Exception as e:
                logger.exception(f"Functions: {name} raised an unexpected error: {e}")
                return FunctionResult(success=False, error=f"{name} failed: {e}", attempts=attempt)

            result.attempts = attempt
            elapsed_ms = (time.monotonic() - started) * 1000
            logger.info(f"Functions: {name} -> success={result.success} in {elapsed_ms:.0f}ms (attempt {attempt})")
            return result

        if isinstance(last_error, asyncio.TimeoutError):
            error = f"{name} timed out after {attempts} attempts"
        else:
            error = f"{name} failed after {attempts} attempts: {last_error}"
        logger.error(f"Functions: {error}")
        return FunctionResult(success=False, error=error, attempts=attempts)
