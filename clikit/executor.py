"""
Command executor with admission control, timeouts and bookkeeping

The executor rejects new work once the concurrency ceiling is reached
instead of queueing it. Timeouts trip the context's cancellation token and
then cancel the pipeline task, so work blocked at an ``await`` is
interrupted rather than left running in the background.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .cancellation import CancellationToken
from .command import CommandResult
from .context import ExecutionContext, ServiceContainer
from .errors import ConcurrencyLimitError, ExecutionTimeoutError, OperationCancelledError
from .interfaces import Command, ServiceProvider
from .pipeline import ExecutionPipeline, PipelineFactory

CONTINUE_ON_ERROR = 'continue_on_error'


@dataclass
class ExecutionOptions:
    """Per-invocation settings for execute_async"""
    timeout: Optional[float] = None
    cancellation_token: Optional[CancellationToken] = None
    services: Optional[ServiceProvider] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    pipeline: Optional[ExecutionPipeline] = None


@dataclass(frozen=True)
class ExecutionRequest:
    """One entry for execute_concurrent / execute_sequential"""
    command: Command
    args: Mapping[str, Any] = field(default_factory=dict)
    options: Mapping[str, Any] = field(default_factory=dict)
    raw_args: Sequence[str] = ()
    execution_options: Optional[ExecutionOptions] = None


@dataclass(frozen=True)
class ExecutionStats:
    """Snapshot of executor counters; times in seconds"""
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time: float = 0.0
    concurrent_executions: int = 0
    max_concurrent_executions: int = 0


@dataclass(frozen=True)
class RunningExecution:
    id: str
    command_name: str
    start_time: float
    duration: float


class _Execution:
    """In-flight bookkeeping entry"""

    def __init__(self, context: ExecutionContext, command: Command):
        self.id: str = context.id
        self.context: ExecutionContext = context
        self.command: Command = command
        self.start_time: float = time.time()
        self.started: float = time.perf_counter()
        self.task: Optional[asyncio.Future] = None
        self.done: asyncio.Event = asyncio.Event()


class CommandExecutor:
    """Runs commands through a pipeline with bounded concurrency"""

    def __init__(self,
                 max_concurrent: int = 10,
                 default_pipeline: Optional[ExecutionPipeline] = None,
                 timeout: Optional[float] = None,
                 grace_period: float = 0.1,
                 services: Optional[ServiceProvider] = None):
        """
        Initialize executor

        Args:
            max_concurrent: Admission-control ceiling
            default_pipeline: Pipeline used when none is given per call
            timeout: Default timeout in seconds (None disables)
            grace_period: Seconds to wait for an interrupted task to unwind
            services: Root service scope; each execution gets a child scope
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        self.max_concurrent: int = max_concurrent
        self.timeout: Optional[float] = timeout
        self.grace_period: float = grace_period
        self.services: ServiceProvider = services if services is not None else ServiceContainer()
        self._default_pipeline: ExecutionPipeline = default_pipeline or PipelineFactory.create_default()
        self._executions: Dict[str, _Execution] = {}
        self._logger: logging.Logger = logging.getLogger('clikit.executor')

        self._total: int = 0
        self._successful: int = 0
        self._failed: int = 0
        self._total_time: float = 0.0
        self._concurrent: int = 0
        self._peak_concurrent: int = 0

    @property
    def default_pipeline(self) -> ExecutionPipeline:
        return self._default_pipeline

    def can_execute(self) -> bool:
        return self._concurrent < self.max_concurrent

    def _check_admission(self, command: Command) -> None:
        if self._concurrent >= self.max_concurrent:
            name = getattr(command, 'name', None)
            self._logger.warning(
                f"Rejected '{name}': maximum concurrent executions reached ({self.max_concurrent})"
            )
            raise ConcurrencyLimitError(self.max_concurrent, name)

    async def execute_async(self,
                            command: Command,
                            args: Optional[Mapping[str, Any]] = None,
                            options: Optional[Mapping[str, Any]] = None,
                            raw_args: Sequence[str] = (),
                            execution_options: Optional[ExecutionOptions] = None) -> CommandResult:
        """
        Build a context and execute a command

        Raises:
            ConcurrencyLimitError: The ceiling is reached; no context is created
        """
        self._check_admission(command)
        execution_options = execution_options or ExecutionOptions()

        context = ExecutionContext(
            command=command,
            args=args,
            options=options,
            raw_args=raw_args,
            services=execution_options.services or self.services.create_child(),
            cancellation_token=execution_options.cancellation_token,
        )
        for key, value in execution_options.metadata.items():
            context.set_metadata(key, value)

        return await self.execute_with_context(
            context, command, execution_options.pipeline, execution_options.timeout
        )

    async def execute_with_context(self,
                                   context: ExecutionContext,
                                   command: Optional[Command] = None,
                                   pipeline: Optional[ExecutionPipeline] = None,
                                   timeout: Optional[float] = None) -> CommandResult:
        """
        Execute through the pipeline with an existing context

        Failures, including timeouts, come back as failed results. Only the
        admission-control rejection is raised.

        Raises:
            ConcurrencyLimitError: The ceiling is reached
        """
        command = command if command is not None else context.command
        # No await before the counter update, so the check and the
        # increment cannot interleave with another execution
        self._check_admission(command)

        pipeline = pipeline or self._default_pipeline
        timeout = timeout if timeout is not None else self.timeout

        execution = _Execution(context, command)
        self._executions[execution.id] = execution
        self._total += 1
        self._concurrent += 1
        self._peak_concurrent = max(self._peak_concurrent, self._concurrent)
        self._logger.debug(f"Starting execution {execution.id} ({context.command_name})")

        succeeded = False
        try:
            if timeout is not None and timeout > 0:
                result = await self._run_with_timeout(execution, pipeline, timeout)
            else:
                result = await pipeline.execute(context, command)
            succeeded = result.success
            return result

        except OperationCancelledError as e:
            self._logger.info(f"Execution {execution.id} cancelled: {e.reason or 'no reason given'}")
            return CommandResult.failure(error=e)

        except Exception as e:
            self._logger.error(f"Error executing '{context.command_name}': {e}", exc_info=True)
            return CommandResult.failure(message=str(e) or type(e).__name__, error=e)

        finally:
            self._total_time += time.perf_counter() - execution.started
            if succeeded:
                self._successful += 1
            else:
                self._failed += 1
            self._executions.pop(execution.id, None)
            self._concurrent -= 1
            execution.done.set()
            self._logger.debug(f"Finished execution {execution.id} (success={succeeded})")

    async def _run_with_timeout(self, execution: _Execution, pipeline: ExecutionPipeline,
                                timeout: float) -> CommandResult:
        context = execution.context
        task = asyncio.ensure_future(pipeline.execute(context, execution.command))
        execution.task = task

        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        error = ExecutionTimeoutError(timeout, context.command_name)
        self._logger.warning(f"Execution {execution.id} timed out after {timeout:g}s")
        context.cancellation_token.cancel(error.reason)
        task.cancel()

        finished, _ = await asyncio.wait({task}, timeout=self.grace_period)
        if not finished:
            self._logger.warning(
                f"Execution {execution.id} still running {self.grace_period:g}s after timeout"
            )
            task.add_done_callback(functools.partial(self._log_late_outcome, execution.id))
        else:
            self._log_late_outcome(execution.id, task)

        return CommandResult.failure(message=str(error), error=error)

    def _log_late_outcome(self, execution_id: str, task: asyncio.Future) -> None:
        """Retrieve the outcome of a task abandoned after a timeout"""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.debug(f"Execution {execution_id} ended with {error!r} after timeout")

    async def _execute_request(self, request: ExecutionRequest) -> CommandResult:
        try:
            return await self.execute_async(
                request.command, request.args, request.options,
                request.raw_args, request.execution_options
            )
        except ConcurrencyLimitError as e:
            return CommandResult.failure(error=e)

    async def execute_concurrent(self, requests: Sequence[ExecutionRequest]) -> List[CommandResult]:
        """
        Run requests concurrently and collect every result

        Requests rejected by admission control appear as failed results.
        """
        outcomes = await asyncio.gather(
            *(self._execute_request(request) for request in requests),
            return_exceptions=True
        )
        results: List[CommandResult] = []
        for outcome in outcomes:
            if isinstance(outcome, CommandResult):
                results.append(outcome)
            elif isinstance(outcome, Exception):
                results.append(CommandResult.failure(error=outcome))
            else:
                raise outcome
        return results

    async def execute_sequential(self, requests: Sequence[ExecutionRequest]) -> List[CommandResult]:
        """
        Run requests one at a time

        Stops after the first failure unless that request's metadata sets
        ``continue_on_error``.
        """
        results: List[CommandResult] = []
        for request in requests:
            result = await self._execute_request(request)
            results.append(result)

            metadata = request.execution_options.metadata if request.execution_options else {}
            if not result.success and not metadata.get(CONTINUE_ON_ERROR):
                break
        return results

    def cancel_execution(self, execution_id: str, reason: Optional[str] = None) -> bool:
        """Trip the cancellation token of one running execution"""
        execution = self._executions.get(execution_id)
        if execution is None:
            return False
        execution.context.cancellation_token.cancel(reason)
        return True

    def cancel_all_executions(self, reason: Optional[str] = None) -> int:
        executions = list(self._executions.values())
        for execution in executions:
            execution.context.cancellation_token.cancel(reason)
        if executions:
            self._logger.info(f"Cancelled {len(executions)} running execution(s)")
        return len(executions)

    def get_running_executions(self) -> List[RunningExecution]:
        now = time.perf_counter()
        return [
            RunningExecution(
                id=execution.id,
                command_name=execution.context.command_name,
                start_time=execution.start_time,
                duration=now - execution.started,
            )
            for execution in self._executions.values()
        ]

    def get_stats(self) -> ExecutionStats:
        return ExecutionStats(
            total_executions=self._total,
            successful_executions=self._successful,
            failed_executions=self._failed,
            average_execution_time=self._total_time / self._total if self._total else 0.0,
            concurrent_executions=self._concurrent,
            max_concurrent_executions=self._peak_concurrent,
        )

    def reset_stats(self) -> None:
        """Reset counters; executions still in flight stay counted as concurrent"""
        self._total = 0
        self._successful = 0
        self._failed = 0
        self._total_time = 0.0
        self._peak_concurrent = self._concurrent

    async def wait_for_all(self) -> None:
        """Wait until every execution running now has finished"""
        pending = [execution.done.wait() for execution in self._executions.values()]
        if pending:
            await asyncio.gather(*pending)
