"""
Middleware pipeline around command execution

Stages run in ascending priority order on the way in and unwind in reverse
on the way out. A stage either awaits ``next_handler()`` or returns its own
CommandResult, in which case nothing further down the chain runs.
"""

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .command import CommandResult
from .config import sanitize_for_logging
from .context import ExecutionContext
from .errors import SetupError
from .interfaces import Command, Middleware, NextHandler

META_START_TIME = 'execution.start_time'
META_END_TIME = 'execution.end_time'
META_DURATION = 'execution.duration'
META_ERROR = 'execution.error'
META_ERROR_TYPE = 'execution.error_type'

LOG_LEVELS: Dict[str, int] = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class PipelineStage:
    """Named, prioritised middleware"""
    name: str
    middleware: Union[Middleware, Callable[..., Any]]
    priority: int = 0

    async def invoke(self, context: ExecutionContext, next_handler: NextHandler) -> CommandResult:
        if callable(getattr(self.middleware, 'execute', None)):
            result = await _resolve(self.middleware.execute(context, next_handler))
        else:
            result = await _resolve(self.middleware(context, next_handler))
        return CommandResult.from_value(result)


class ExecutionPipeline:
    """
    Ordered middleware chain wrapping a terminal command call

    Middleware contract:
    - Either an object with ``execute(context, next_handler)`` or a callable
      taking ``(context, next_handler)``; sync or async
    - ``await next_handler()`` continues the chain
    - Returning without calling it short-circuits the command
    """

    def __init__(self) -> None:
        self._stages: Tuple[PipelineStage, ...] = ()
        self._logger: logging.Logger = logging.getLogger('clikit.pipeline')

    def use(self, name: str, middleware: Union[Middleware, Callable[..., Any]],
            priority: int = 0) -> 'ExecutionPipeline':
        """
        Add middleware

        Args:
            name: Unique stage name
            middleware: Middleware instance or callable
            priority: Lower values run first (outermost)

        Raises:
            ValueError: Empty or duplicate stage name
            TypeError: Middleware is neither a Middleware nor callable
        """
        if not name or not isinstance(name, str):
            raise ValueError("Middleware stage name must be a non-empty string")
        if not (callable(getattr(middleware, 'execute', None)) or callable(middleware)):
            raise TypeError(f"Middleware '{name}' must be callable or define execute()")
        if any(stage.name == name for stage in self._stages):
            raise ValueError(f"Middleware stage '{name}' is already registered")

        stages = list(self._stages) + [PipelineStage(name, middleware, priority)]
        # sorted() is stable, so equal priorities keep registration order
        self._stages = tuple(sorted(stages, key=lambda stage: stage.priority))
        self._logger.debug(f"Added middleware stage '{name}' (priority {priority})")
        return self

    def remove(self, name: str) -> bool:
        remaining = tuple(stage for stage in self._stages if stage.name != name)
        if len(remaining) == len(self._stages):
            return False
        self._stages = remaining
        self._logger.debug(f"Removed middleware stage '{name}'")
        return True

    @property
    def stages(self) -> Tuple[PipelineStage, ...]:
        return self._stages

    def clear(self) -> None:
        self._stages = ()

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, name: str) -> bool:
        return any(stage.name == name for stage in self._stages)

    def build(self, context: ExecutionContext, command: Command) -> NextHandler:
        """Compose the current stages around the terminal command call"""

        async def terminal() -> CommandResult:
            return CommandResult.from_value(await _resolve(command.execute(context)))

        handler: NextHandler = terminal

        # Build chain in reverse order
        for stage in reversed(self._stages):
            def make_wrapper(current: PipelineStage, next_h: NextHandler) -> NextHandler:
                async def wrapper() -> CommandResult:
                    return await current.invoke(context, next_h)
                return wrapper

            handler = make_wrapper(stage, handler)

        return handler

    async def execute(self, context: ExecutionContext, command: Optional[Command] = None) -> CommandResult:
        """
        Run the chain for one invocation

        Args:
            context: Execution context
            command: Command to invoke (defaults to ``context.command``)

        Returns:
            Result produced by the command or by a short-circuiting stage
        """
        handler = self.build(context, command if command is not None else context.command)
        return await handler()


class ValidationMiddleware(Middleware):
    """Cancellation check plus the command's validate() hook"""

    async def execute(self, context: ExecutionContext, next_handler: NextHandler) -> CommandResult:
        context.cancellation_token.throw_if_cancelled()

        validate = getattr(context.command, 'validate', None)
        if callable(validate):
            try:
                is_valid = await _resolve(validate(context))
            except Exception as e:
                return CommandResult.failure(message=f"Validation error: {e}", error=e)
            if not is_valid:
                return CommandResult.failure(message='Command validation failed')

        return await next_handler()


class TimingMiddleware(Middleware):
    """Record start, end and duration (seconds) in context metadata"""

    async def execute(self, context: ExecutionContext, next_handler: NextHandler) -> CommandResult:
        context.set_metadata(META_START_TIME, time.time())
        started = time.perf_counter()
        try:
            return await next_handler()
        finally:
            context.set_metadata(META_END_TIME, time.time())
            context.set_metadata(META_DURATION, time.perf_counter() - started)


class LoggingMiddleware(Middleware):
    """
    Log command start and completion

    Start and completion messages are emitted at ``level`` when it is
    ``info`` or lower; failures are always logged at error level.
    Exceptions from inner stages are logged and turned into failure
    results.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, level: str = 'info'):
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level '{level}', expected one of: {', '.join(LOG_LEVELS)}")
        self.logger: logging.Logger = logger or logging.getLogger('clikit.pipeline')
        self.level: int = LOG_LEVELS[level]

    async def execute(self, context: ExecutionContext, next_handler: NextHandler) -> CommandResult:
        name = context.command_name
        verbose = self.level <= logging.INFO

        if verbose:
            self.logger.log(self.level, f"Executing command: {name}")
            self.logger.log(self.level, f"Args: {sanitize_for_logging(dict(context.args))}")
            self.logger.log(self.level, f"Options: {sanitize_for_logging(dict(context.options))}")

        try:
            result = await next_handler()
        except Exception as e:
            self.logger.error(f"Command failed: {name}: {e}", exc_info=self.level <= logging.DEBUG)
            return CommandResult.failure(error=e)

        if result.success:
            if verbose:
                self.logger.log(self.level, f"Command completed successfully: {name}")
                self.logger.log(self.level, f"Exit code: {result.exit_code}")
        else:
            self.logger.error(
                f"Command failed: {name} (exit code {result.exit_code}): {result.message or 'no message'}"
            )
        return result


class ErrorHandlingMiddleware(Middleware):
    """Outermost catch: any exception becomes a failure result"""

    async def execute(self, context: ExecutionContext, next_handler: NextHandler) -> CommandResult:
        try:
            return await next_handler()
        except Exception as e:
            context.set_metadata(META_ERROR, e)
            context.set_metadata(META_ERROR_TYPE, type(e).__name__)
            return CommandResult.failure(message=str(e) or type(e).__name__, error=e)


class LifecycleMiddleware(Middleware):
    """Run setup() before and cleanup() after the rest of the chain"""

    def __init__(self) -> None:
        self._logger: logging.Logger = logging.getLogger('clikit.pipeline')

    async def execute(self, context: ExecutionContext, next_handler: NextHandler) -> CommandResult:
        command = context.command
        setup = getattr(command, 'setup', None)
        if callable(setup):
            try:
                await _resolve(setup())
            except Exception as e:
                message = f"Setup failed: {e}"
                self._logger.debug(f"{message} ({context.command_name})")
                return CommandResult.failure(
                    message=message,
                    error=SetupError(message, context.command_name, cause=e),
                )

        try:
            return await next_handler()
        finally:
            cleanup = getattr(command, 'cleanup', None)
            if callable(cleanup):
                try:
                    await _resolve(cleanup())
                except Exception as e:
                    self._logger.warning(f"Cleanup failed for '{context.command_name}': {e}")


class PipelineFactory:
    """Pre-configured pipelines"""

    PROFILES = ('default', 'minimal', 'debug')

    @staticmethod
    def create_default(logger: Optional[logging.Logger] = None) -> ExecutionPipeline:
        pipeline = ExecutionPipeline()
        pipeline.use('error-handling', ErrorHandlingMiddleware(), -100)
        pipeline.use('timing', TimingMiddleware(), -50)
        pipeline.use('logging', LoggingMiddleware(logger), -40)
        pipeline.use('lifecycle', LifecycleMiddleware(), -30)
        pipeline.use('validation', ValidationMiddleware(), -20)
        return pipeline

    @staticmethod
    def create_minimal() -> ExecutionPipeline:
        pipeline = ExecutionPipeline()
        pipeline.use('error-handling', ErrorHandlingMiddleware(), -100)
        return pipeline

    @staticmethod
    def create_debug(logger: Optional[logging.Logger] = None) -> ExecutionPipeline:
        pipeline = ExecutionPipeline()
        pipeline.use('error-handling', ErrorHandlingMiddleware(), -100)
        pipeline.use('timing', TimingMiddleware(), -50)
        pipeline.use('logging', LoggingMiddleware(logger, level='debug'), -40)
        pipeline.use('lifecycle', LifecycleMiddleware(), -30)
        pipeline.use('validation', ValidationMiddleware(), -20)
        return pipeline

    @classmethod
    def create(cls, profile: str = 'default', logger: Optional[logging.Logger] = None) -> ExecutionPipeline:
        if profile == 'default':
            return cls.create_default(logger)
        if profile == 'minimal':
            return cls.create_minimal()
        if profile == 'debug':
            return cls.create_debug(logger)
        raise ValueError(f"Unknown pipeline profile '{profile}', expected one of: {', '.join(cls.PROFILES)}")
