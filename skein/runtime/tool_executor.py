"""
Unified tool executor.

Resolves tool calls through a ToolRegistry, validates arguments, runs tools
under timeout and cancellation, and converts every failure into a
ToolResult. Nothing a tool does escapes into the agent loop.
"""

import asyncio
import time
from typing import Awaitable, Callable, TYPE_CHECKING

from skein.domain import ToolCallBlock, ToolErrorKind, ToolResult
from skein.errors import ToolCancelledError
from skein.providers.tools import BaseTool, ToolInvocation
from skein.utils.logging import get_logger

if TYPE_CHECKING:
    from skein.providers.tools import ToolRegistry
    from skein.runtime.control import CancellationSignal

logger = get_logger(__name__)

StartCallback = Callable[[ToolInvocation], Awaitable[None]]
ResultCallback = Callable[[ToolResult], Awaitable[None]]
SkipCheck = Callable[[], str | None]


class ToolExecutor:
    """Unified tool executor that returns ToolResult directly."""

    def __init__(
        self,
        registry: "ToolRegistry",
        max_parallel: int = 8,
        timeout: float | None = None,
        cancel_grace_period: float = 2.0,
    ):
        """
        Initialize tool executor.

        Args:
            registry: Tools available to the run
            max_parallel: Maximum tools running at once in a batch
            timeout: Execution timeout overriding every tool's own default
            cancel_grace_period: Seconds a running tool gets to reach a
                checkpoint after cancellation before its task is cancelled
        """
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.registry = registry
        self.max_parallel = max_parallel
        self.timeout = timeout
        self.cancel_grace_period = cancel_grace_period

    async def execute(
        self,
        call: ToolCallBlock,
        signal: "CancellationSignal",
        on_start: StartCallback | None = None,
    ) -> ToolResult:
        """
        Execute a single tool call.

        Args:
            call: tool_call block from the assistant message
            signal: Run cancellation signal
            on_start: Awaited right before the tool starts running

        Returns:
            ToolResult: Tool execution result (never raises for tool failures)
        """
        start_time = time.time()

        if signal.is_cancelled:
            logger.debug("tool_skipped_cancelled", tool_name=call.name, tool_call_id=call.id)
            return self._create_error_result(
                call,
                error=signal.reason or "Cancelled before execution",
                kind=ToolErrorKind.CANCELLED,
                start_time=start_time,
            )

        tool = self.registry.get(call.name)
        if tool is None:
            available = ", ".join(self.registry.list_available()) or "none"
            return self._create_error_result(
                call,
                error=f"Tool '{call.name}' not found. Available tools: {available}",
                kind=ToolErrorKind.INVALID_ARGUMENTS,
                start_time=start_time,
            )

        if call.raw_arguments is not None:
            return self._create_error_result(
                call,
                error=f"Invalid JSON arguments: {call.raw_arguments!r}",
                kind=ToolErrorKind.INVALID_ARGUMENTS,
                start_time=start_time,
            )

        problems = tool.validate_arguments(call.arguments)
        if problems:
            return self._create_error_result(
                call,
                error="Invalid arguments: " + "; ".join(problems),
                kind=ToolErrorKind.INVALID_ARGUMENTS,
                start_time=start_time,
            )

        invocation = ToolInvocation(
            call_id=call.id,
            name=call.name,
            arguments=dict(call.arguments),
            signal=signal,
        )
        if on_start is not None:
            await on_start(invocation)

        timeout = self.timeout if self.timeout is not None else tool.timeout_seconds
        logger.debug("executing_tool", tool_name=call.name, tool_call_id=call.id, timeout=timeout)
        result = await self._run(tool, invocation, call, timeout, start_time)
        logger.debug(
            "tool_execution_completed",
            tool_name=call.name,
            tool_call_id=call.id,
            success=result.is_success,
            error_kind=result.error_kind.value if result.error_kind else None,
            duration=result.duration,
        )
        return result

    async def _run(
        self,
        tool: BaseTool,
        invocation: ToolInvocation,
        call: ToolCallBlock,
        timeout: float | None,
        start_time: float,
    ) -> ToolResult:
        signal = invocation.signal
        task = asyncio.create_task(tool.execute(invocation))
        cancel_waiter = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return self._collect(task, call, start_time)

            if cancel_waiter in done:
                # Give the tool a chance to observe the signal at a checkpoint
                done, _ = await asyncio.wait({task}, timeout=self.cancel_grace_period)
                if task in done:
                    return self._collect(task, call, start_time)
                logger.info(
                    "tool_cancel_grace_expired",
                    tool_name=call.name,
                    tool_call_id=call.id,
                    grace_period=self.cancel_grace_period,
                )
                await self._cancel_task(task, call)
                return self._create_error_result(
                    call,
                    error=signal.reason or "Tool execution was cancelled",
                    kind=ToolErrorKind.CANCELLED,
                    start_time=start_time,
                )

            logger.warning(
                "tool_execution_timeout", tool_name=call.name, tool_call_id=call.id, timeout=timeout
            )
            await self._cancel_task(task, call)
            return self._create_error_result(
                call,
                error=f"Tool execution timed out after {timeout}s",
                kind=ToolErrorKind.TIMED_OUT,
                start_time=start_time,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_waiter.cancel()

    def _collect(self, task: asyncio.Task, call: ToolCallBlock, start_time: float) -> ToolResult:
        """Turn a finished tool task into a ToolResult, whatever happened."""
        try:
            result = task.result()
        except (ToolCancelledError, asyncio.CancelledError) as e:
            logger.info("tool_execution_cancelled", tool_name=call.name, tool_call_id=call.id)
            reason = getattr(e, "reason", None)
            return self._create_error_result(
                call,
                error=reason or "Tool execution was cancelled",
                kind=ToolErrorKind.CANCELLED,
                start_time=start_time,
            )
        except Exception as e:
            logger.error(
                "tool_execution_exception",
                tool_name=call.name,
                tool_call_id=call.id,
                error=str(e),
                exc_info=True,
            )
            return self._create_error_result(
                call,
                error=f"Tool execution failed: {e}",
                kind=ToolErrorKind.EXECUTION_FAILED,
                start_time=start_time,
            )

        if not isinstance(result, ToolResult):
            return self._create_error_result(
                call,
                error=f"Tool returned {type(result).__name__}, expected ToolResult",
                kind=ToolErrorKind.EXECUTION_FAILED,
                start_time=start_time,
            )
        if result.tool_call_id != call.id or result.tool_name != call.name:
            result = result.model_copy(update={"tool_call_id": call.id, "tool_name": call.name})
        return result

    async def _cancel_task(self, task: asyncio.Task, call: ToolCallBlock) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(
                "tool_failed_during_cancellation",
                tool_name=call.name,
                tool_call_id=call.id,
                error=str(e),
            )

    async def execute_batch(
        self,
        calls: list[ToolCallBlock],
        signal: "CancellationSignal",
        on_start: StartCallback | None = None,
        on_result: ResultCallback | None = None,
        skip_reason: SkipCheck | None = None,
    ) -> list[ToolResult]:
        """
        Execute multiple tool calls concurrently.

        At most `max_parallel` tools run at once; tools that are not
        concurrency safe run one at a time. `on_result` is awaited in actual
        completion order, one callback at a time.

        Args:
            calls: tool_call blocks in the order the model issued them
            signal: Run cancellation signal
            on_start: Awaited as each tool starts
            on_result: Awaited as each tool finishes
            skip_reason: Consulted right before each call starts; a non-empty
                reason skips the call with a cancelled result

        Returns:
            list[ToolResult]: Results in call order
        """
        semaphore = asyncio.Semaphore(self.max_parallel)
        exclusive = asyncio.Lock()
        callback_lock = asyncio.Lock()

        async def run_one(call: ToolCallBlock) -> ToolResult:
            tool = self.registry.get(call.name)
            async with semaphore:
                if tool is not None and not tool.is_concurrency_safe():
                    async with exclusive:
                        result = await self._start(call, signal, on_start, skip_reason)
                else:
                    result = await self._start(call, signal, on_start, skip_reason)
            if on_result is not None:
                async with callback_lock:
                    await on_result(result)
            return result

        tasks = [asyncio.create_task(run_one(call)) for call in calls]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _start(
        self,
        call: ToolCallBlock,
        signal: "CancellationSignal",
        on_start: StartCallback | None,
        skip_reason: SkipCheck | None,
    ) -> ToolResult:
        reason = skip_reason() if skip_reason is not None else None
        if reason:
            logger.debug("tool_skipped", tool_name=call.name, tool_call_id=call.id, reason=reason)
            return self._create_error_result(
                call, error=reason, kind=ToolErrorKind.CANCELLED, start_time=time.time()
            )
        return await self.execute(call, signal, on_start=on_start)

    def _create_error_result(
        self,
        call: ToolCallBlock,
        error: str,
        kind: ToolErrorKind,
        start_time: float,
    ) -> ToolResult:
        """Create error result."""
        return ToolResult.failure(
            tool_name=call.name,
            tool_call_id=call.id,
            error=error,
            error_kind=kind,
            start_time=start_time,
            input_args=dict(call.arguments),
        )


__all__ = ["ToolExecutor", "StartCallback", "ResultCallback", "SkipCheck"]
