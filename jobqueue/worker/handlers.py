"""
Job handlers registry and implementations.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes.

A handler takes a JobContext and returns a JobResult (or None for plain
success). It may be a coroutine function or a regular function; regular
functions run in a worker thread so blocking work does not stall the
event loop.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from jobqueue.constants import ErrorKind
from jobqueue.errors import HandlerError
from jobqueue.types.job import ErrorDetail, JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], "JobResult | None | Awaitable[JobResult | None]"]


class HandlerRegistry:
    """
    Lookup table from job_type to handler.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            job_type: The job type this handler processes.

        Example:
            @registry.register("send_email")
            async def handle_send_email(context: JobContext) -> JobResult:
                ...
        """
        def decorator(handler: JobHandler) -> JobHandler:
            self.add(job_type, handler)
            return handler
        return decorator

    def add(self, job_type: str, handler: JobHandler) -> None:
        """Register a handler, replacing any existing one for job_type."""
        self._handlers[job_type] = handler
        logger.debug(f"Registered handler for job type: {job_type}")

    def get(self, job_type: str) -> JobHandler | None:
        """Get the handler for a job type, or None."""
        return self._handlers.get(job_type)

    def list_handlers(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers.keys())

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers


default_registry = HandlerRegistry()


# ============================================================================
# Built-in job handlers
# ============================================================================


@default_registry.register("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """
    Echo handler for testing.

    Simply returns the arguments as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt}
    )
    return JobResult.ok({"echo": context.arguments})


@default_registry.register("sleep")
async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleep handler for testing delays.

    Arguments: [duration_seconds]
    """
    duration = float(context.arguments[0]) if context.arguments else 1.0
    await asyncio.sleep(duration)
    return JobResult.ok({"slept_for": duration})


@default_registry.register("hello")
def handle_hello(context: JobContext) -> JobResult:
    """
    Simulates a long, time-consuming task, then logs the current time.

    Runs as a blocking function in a worker thread.
    Arguments: [duration_seconds] (default 5)
    """
    duration = float(context.arguments[0]) if context.arguments else 5.0
    time.sleep(duration)

    now = datetime.now()
    stamp = f"{now:%Y-%m-%d - %H:%M:%S}.{now.microsecond // 1000:03d}"
    message = f"hello from HelloJob {stamp}"
    logger.info(message, extra={"job_id": str(context.job_id)})
    return JobResult.ok({"message": message})


@default_registry.register("failing_job")
async def handle_failing_job(context: JobContext) -> JobResult:
    """
    Handler that always fails - for testing retry logic.
    """
    raise HandlerError(f"Intentional failure on attempt {context.attempt}")


async def _invoke(handler: JobHandler, context: JobContext) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(context)
    result = await asyncio.to_thread(handler, context)
    if inspect.isawaitable(result):
        return await result
    return result


async def _wait_abandoned(execution: asyncio.Future, context: JobContext, cancel: bool) -> None:
    """
    Wait for a timed-out execution to actually stop.

    Coroutine handlers are cancelled. A thread cannot be interrupted, so a
    plain-function handler is waited for until it returns; the caller's slot
    stays occupied meanwhile.
    """
    if cancel:
        execution.cancel()
    await asyncio.wait([execution])

    if not execution.cancelled() and execution.exception() is not None:
        logger.warning(
            "Timed-out handler raised after its deadline",
            extra={"job_id": str(context.job_id), "error": str(execution.exception())}
        )


async def execute_job(
    context: JobContext,
    registry: HandlerRegistry = default_registry,
    timeout: float | None = None,
) -> JobResult:
    """
    Execute a job using the appropriate handler.

    Never raises for handler faults; every outcome is a JobResult:
    - unknown job type -> UNKNOWN_JOB_TYPE
    - HandlerError or JobResult(success=False) -> HANDLER_ERROR
    - timeout -> TIMEOUT (returned once the handler has stopped)
    - HandlerCrash or any other exception -> HANDLER_CRASH

    Args:
        context: The job context.
        registry: Registry to resolve context.job_type in.
        timeout: Optional execution timeout in seconds.

    Returns:
        JobResult from the handler.
    """
    handler = registry.get(context.job_type)

    if handler is None:
        logger.error(
            f"No handler for job type: {context.job_type}",
            extra={"job_id": str(context.job_id)}
        )
        return JobResult.failure(
            f"No handler registered for job type: {context.job_type}",
            kind=ErrorKind.UNKNOWN_JOB_TYPE,
        )

    start = time.perf_counter()
    execution = asyncio.ensure_future(_invoke(handler, context))
    try:
        if timeout is not None:
            result = await asyncio.wait_for(asyncio.shield(execution), timeout=timeout)
        else:
            result = await execution
    except asyncio.CancelledError:
        execution.cancel()
        raise
    except asyncio.TimeoutError:
        logger.warning(
            f"Job timed out after {timeout}s",
            extra={"job_id": str(context.job_id), "job_type": context.job_type}
        )
        await _wait_abandoned(execution, context, cancel=inspect.iscoroutinefunction(handler))
        result = JobResult.failure(
            f"Job exceeded timeout of {timeout}s",
            kind=ErrorKind.TIMEOUT,
        )
    except HandlerError as e:
        logger.warning(
            "Handler reported an error",
            extra={"job_id": str(context.job_id), "error": str(e)}
        )
        result = JobResult(
            success=False,
            error=ErrorDetail.from_exception(e, ErrorKind.HANDLER_ERROR),
        )
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)}
        )
        result = JobResult(
            success=False,
            error=ErrorDetail.from_exception(e, ErrorKind.HANDLER_CRASH),
        )

    if result is None:
        result = JobResult.ok()
    elif not isinstance(result, JobResult):
        result = JobResult.ok(result)
    elif not result.success and result.error is None:
        result = result.model_copy(
            update={"error": ErrorDetail(kind=ErrorKind.HANDLER_ERROR, message="Handler reported failure")}
        )

    return result.model_copy(update={"duration_ms": (time.perf_counter() - start) * 1000})
