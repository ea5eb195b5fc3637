"""
Main CLI application class

Wires parser, registry, pipeline and executor together explicitly, turns a
parse result into an execution, and maps outcomes to process exit codes.
"""

import asyncio
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .command import CommandRegistry, CommandResult
from .config import CONFIG_SCHEMA, DEFAULT_CONFIG, ConfigError, JsonConfigProvider
from .context import ExecutionContext, ServiceContainer, ServiceTokens
from .decorators import argument as argument_decorator
from .decorators import build_command
from .decorators import command as command_decorator
from .decorators import example as example_decorator
from .decorators import option as option_decorator
from .executor import CommandExecutor
from .fields import SubcommandConfig
from .interfaces import Command, ConfigProvider, Middleware, OutputFormatter
from .output import TerminalOutputFormatter, echo
from .parser import ArgumentParser, ParseResult
from .pipeline import ExecutionPipeline, PipelineFactory

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Keys accepted through ``extra=`` and copied into JSON log records
STRUCTURED_FIELDS = ('context', 'source')


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                data[key] = value
        if record.exc_info:
            data['error'] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def _level_from(value: Union[int, str]) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value}")
    return level


class CLI:
    """
    Main CLI application class

    Features:
    - Declarative command definition via decorators
    - Async command execution through a middleware pipeline
    - Admission control and timeouts via the command executor
    - Configuration with schema validation
    - Formatted output
    - SIGINT cancels running executions
    """

    def __init__(self,
                 name: str = 'app',
                 version: Optional[str] = None,
                 description: str = '',
                 config_path: Optional[str] = None,
                 config_provider: Optional[ConfigProvider] = None,
                 output_formatter: Optional[OutputFormatter] = None,
                 command_registry: Optional[CommandRegistry] = None,
                 pipeline: Optional[ExecutionPipeline] = None,
                 executor: Optional[CommandExecutor] = None,
                 log_level: Optional[Union[int, str]] = None,
                 log_format: Optional[str] = None,
                 max_concurrent: Optional[int] = None,
                 timeout: Optional[float] = None,
                 parser_mode: Optional[str] = None,
                 env: Optional[Dict[str, str]] = None):
        """
        Initialize CLI application

        Explicit arguments win over values from configuration.
        """
        self.name: str = name
        self.version: Optional[str] = version
        self.description: str = description

        self.config: ConfigProvider = config_provider or JsonConfigProvider(
            config_path, default_config=DEFAULT_CONFIG, schema=CONFIG_SCHEMA
        )

        self._setup_logging(
            _level_from(log_level if log_level is not None else self.config.get('logging.level', 'WARNING')),
            log_format or self.config.get('logging.format', 'text'),
        )
        self._logger: logging.Logger = logging.getLogger(f'clikit.{name}')
        self._logger.info(f"Initializing CLI application '{name}'")

        self.output: OutputFormatter = output_formatter or TerminalOutputFormatter()
        self.commands: CommandRegistry = command_registry or CommandRegistry()
        self.parser_mode: str = parser_mode or self.config.get('parser.mode', 'strict')
        self.case_sensitive: bool = self.config.get('parser.case_sensitive', True)
        self._env: Optional[Dict[str, str]] = env

        self.services: ServiceContainer = ServiceContainer()
        self.services.register(ServiceTokens.LOGGER, self._logger)
        self.services.register(ServiceTokens.CONFIG, self.config)
        self.services.register(ServiceTokens.OUTPUT, self.output)

        if executor is not None:
            self.executor: CommandExecutor = executor
            self.pipeline: ExecutionPipeline = pipeline or executor.default_pipeline
        else:
            self.pipeline = pipeline or PipelineFactory.create(
                self.config.get('pipeline.profile', 'default'),
                logging.getLogger('clikit.pipeline')
            )
            self.executor = CommandExecutor(
                max_concurrent=max_concurrent or self.config.get('executor.max_concurrent', 10),
                default_pipeline=self.pipeline,
                timeout=timeout if timeout is not None else self.config.get('executor.timeout'),
                services=self.services,
            )
        self.services.register(ServiceTokens.EXECUTOR, self.executor)

        self.exit_code: int = EXIT_OK
        self._interrupted: bool = False
        self._current_task: Optional[asyncio.Future] = None

        self._logger.debug("CLI application initialized successfully")

    def _setup_logging(self, log_level: int, log_format: str) -> None:
        """Configure the toolkit's root logger once"""
        logger: logging.Logger = logging.getLogger('clikit')
        logger.setLevel(log_level)

        if not logger.handlers:
            console_handler: logging.StreamHandler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            if log_format == 'json':
                console_handler.setFormatter(JsonLogFormatter())
            else:
                console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(console_handler)

    # -- command definition -------------------------------------------------

    def register(self, target: Union[Command, Callable[..., Any]]) -> Command:
        """Register a Command instance or a (decorated) function"""
        cmd = target if isinstance(target, Command) else build_command(target)
        self.commands.register(cmd)
        return cmd

    def command(self, name: Optional[str] = None, description: Optional[str] = None,
                aliases: Optional[Sequence[str]] = None,
                hidden: bool = False) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Decorator that defines and registers a command

        Must be the outermost decorator so argument/option declarations
        below it are already attached.
        """

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            command_decorator(name, description, aliases, hidden)(func)
            self.register(func)
            return func

        return decorator

    def argument(self, name: str, description: str = '', type: Any = 'string',
                 **fields: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return argument_decorator(name, description, type, **fields)

    def option(self, name: str, alias: Optional[str] = None, description: str = '',
               type: Any = None, default: Any = None, flag: bool = False,
               **fields: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return option_decorator(name, alias, description, type, default, flag, **fields)

    def example(self, example_text: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        return example_decorator(example_text)

    def use(self, name: str, middleware: Union[Middleware, Callable[..., Any]],
            priority: int = 0) -> None:
        """Add middleware to the execution pipeline"""
        self.pipeline.use(name, middleware, priority)

    # -- parsing ------------------------------------------------------------

    def build_parser(self) -> ArgumentParser:
        """Parser with one subcommand per registered command"""
        parser = ArgumentParser(
            prog=self.name,
            description=self.description,
            mode=self.parser_mode,
            case_sensitive=self.case_sensitive,
            add_version=self.version is not None,
            env=self._env,
        )
        for cmd in self.commands.commands():
            parser.add_subcommand(SubcommandConfig(
                name=cmd.name,
                description=cmd.description,
                aliases=tuple(a for a in cmd.aliases if self.commands.get(a) is cmd),
                arguments=tuple(cmd.arguments),
                options=tuple(cmd.options),
                hidden=cmd.hidden,
            ))
        return parser

    def format_help(self, command: Optional[str] = None) -> str:
        parser = self.build_parser()
        text = parser.format_help(command)
        cmd = self.commands.get(command) if command else None
        if cmd is not None and cmd.examples:
            text += '\nExamples:\n' + ''.join(f"  {e}\n" for e in cmd.examples)
        return text

    # -- running ------------------------------------------------------------

    def _on_interrupt(self) -> None:
        if self._interrupted:
            self._logger.warning("Received second SIGINT while cancelling")
            return

        self._interrupted = True
        self._logger.info("Received SIGINT, cancelling running executions")
        echo("\nInterrupted. Cancelling running commands...", 'warning', file=sys.stderr,
             formatter=self.output)
        self.executor.cancel_all_executions('Interrupted by user')
        if self._current_task is not None:
            self._current_task.cancel()

    def _install_signal_handler(self, loop: asyncio.AbstractEventLoop) -> bool:
        if threading.current_thread() is not threading.main_thread():
            self._logger.debug("Signal handlers can only be registered from main thread; skipping")
            return False
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
            return True
        except (NotImplementedError, RuntimeError, ValueError) as e:
            self._logger.debug(f"Could not set SIGINT handler: {e}")
            return False

    def _report_parse_errors(self, result: ParseResult) -> None:
        echo(self.output.format_validation_errors(result.errors), file=sys.stderr)
        hint = f"Run '{self.name} {result.subcommand + ' ' if result.subcommand else ''}--help' for usage."
        echo(hint, 'info', file=sys.stderr, formatter=self.output)

    def _report_unknown_command(self, name: str) -> None:
        echo(f"Command '{name}' not found", 'error', file=sys.stderr, formatter=self.output)
        suggestions = self.commands.suggest(name)
        if suggestions:
            echo(f"Did you mean: {', '.join(suggestions)}?", 'info', file=sys.stderr,
                 formatter=self.output)

    async def execute(self, result: ParseResult) -> CommandResult:
        """Execute the command named by a successful parse result"""
        cmd = self.commands.get(result.subcommand or result.command)
        if cmd is None:
            raise ValueError(f"Command '{result.command}' is not registered")
        context = ExecutionContext.create(cmd, result, services=self.services.create_child())
        return await self.executor.execute_with_context(context, cmd)

    async def run_async(self, args: Optional[List[str]] = None) -> int:
        """Run CLI application asynchronously; returns the exit code"""
        if args is None:
            args = sys.argv[1:]

        self._interrupted = False
        parser = self.build_parser()
        parsed = parser.parse(args)

        if parsed.version:
            echo(f"{self.name} {self.version}", formatter=self.output)
            return EXIT_OK

        if parsed.help:
            echo(self.format_help(parsed.subcommand), formatter=self.output)
            return EXIT_OK

        if not parsed.command:
            if not parsed.success:
                self._report_parse_errors(parsed)
                self.exit_code = EXIT_USAGE
                return EXIT_USAGE
            echo(self.format_help(), formatter=self.output)
            return EXIT_OK

        if parsed.subcommand is None:
            self._report_unknown_command(parsed.command)
            self.exit_code = EXIT_FAILURE
            return EXIT_FAILURE

        if not parsed.success:
            self._report_parse_errors(parsed)
            self.exit_code = EXIT_USAGE
            return EXIT_USAGE

        loop = asyncio.get_running_loop()
        handler_installed = self._install_signal_handler(loop)
        self._current_task = asyncio.ensure_future(self.execute(parsed))

        try:
            result = await self._current_task
        except asyncio.CancelledError:
            if not self._interrupted:
                raise
            self._logger.info("Execution interrupted by user")
            self.exit_code = EXIT_INTERRUPTED
            return EXIT_INTERRUPTED
        finally:
            self._current_task = None
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
            self._save_config()

        if self._interrupted:
            self.exit_code = EXIT_INTERRUPTED
            return EXIT_INTERRUPTED

        text = self.output.format_result(result, verbose=self._logger.isEnabledFor(logging.DEBUG))
        if text:
            echo(text, file=sys.stdout if result.success else sys.stderr)
        if result.data is not None and result.success:
            self._logger.debug(f"Command returned data: {result.data!r}")

        exit_code = result.exit_code if result.exit_code or result.success else EXIT_FAILURE
        self.exit_code = exit_code
        return exit_code

    def _save_config(self) -> None:
        try:
            self.config.save()
            self._logger.debug("Configuration saved on exit")
        except ConfigError as e:
            self._logger.error(f"Failed to save configuration: {e}")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run CLI application (synchronous wrapper)"""
        try:
            return asyncio.run(self.run_async(args))
        except KeyboardInterrupt:
            self._logger.info("Interrupted by user")
            self.exit_code = EXIT_INTERRUPTED
            return EXIT_INTERRUPTED
