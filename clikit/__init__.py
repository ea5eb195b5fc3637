"""
clikit - Main Package Entry Point

A toolkit for building command-line interfaces in Python.

Features:
- Tokenizer and field resolver with typed, validated arguments and options
- Declarative command definition with decorators
- Async/sync command execution
- Priority-ordered middleware pipeline
- Executor with admission control, timeouts and cooperative cancellation
- Configuration management with JSON schemas
- Terminal output with ANSI styles

Requires Python 3.9+
"""

import sys

# Check Python version
if sys.version_info < (3, 9):
    raise RuntimeError(
        "clikit requires Python 3.9 or higher. "
        f"You are using Python {sys.version_info.major}.{sys.version_info.minor}. "
        "Please upgrade your Python installation."
    )

from .application import CLI, JsonLogFormatter
from .cancellation import CancellationToken
from .command import CommandRegistry, CommandResult, FunctionCommand
from .config import (
    ConfigError, ConfigIOError, ConfigValidationError, JsonConfigProvider,
    sanitize_for_logging
)
from .context import ExecutionContext, ServiceContainer, ServiceTokens
from .decorators import argument, build_command, command, example, option
from .errors import (
    CLIError, CommandExecutionError, CommandNotFoundError, ConcurrencyLimitError,
    ExecutionTimeoutError, OperationCancelledError, ServiceNotFoundError,
    SetupError, ValidationFailedError
)
from .executor import CommandExecutor, ExecutionOptions, ExecutionRequest, ExecutionStats
from .fields import (
    ArgumentDefinition, ArgumentType, FieldError, OptionDefinition,
    SubcommandConfig, ValidationContext, ValidationResult
)
from .interfaces import Command, ConfigProvider, Middleware, OutputFormatter, ServiceProvider
from .output import TerminalOutputFormatter, echo
from .parser import ArgumentParser, ParseResult
from .pipeline import (
    ErrorHandlingMiddleware, ExecutionPipeline, LifecycleMiddleware, LoggingMiddleware,
    PipelineFactory, TimingMiddleware, ValidationMiddleware
)
from .tokenizer import Token, TokenType, Tokenizer, tokenize

__version__ = "1.0.0"

__all__ = [
    # Core application
    'CLI',
    'JsonLogFormatter',

    # Decorators
    'command',
    'argument',
    'option',
    'example',
    'build_command',

    # Parsing
    'Tokenizer',
    'Token',
    'TokenType',
    'tokenize',
    'ArgumentParser',
    'ParseResult',
    'ArgumentDefinition',
    'OptionDefinition',
    'ArgumentType',
    'SubcommandConfig',
    'FieldError',
    'ValidationContext',
    'ValidationResult',

    # Execution
    'CancellationToken',
    'ExecutionContext',
    'ServiceContainer',
    'ServiceTokens',
    'ExecutionPipeline',
    'PipelineFactory',
    'ValidationMiddleware',
    'TimingMiddleware',
    'LoggingMiddleware',
    'ErrorHandlingMiddleware',
    'LifecycleMiddleware',
    'CommandExecutor',
    'ExecutionOptions',
    'ExecutionRequest',
    'ExecutionStats',

    # Command system
    'CommandResult',
    'FunctionCommand',
    'CommandRegistry',

    # Interfaces
    'Command',
    'ConfigProvider',
    'Middleware',
    'OutputFormatter',
    'ServiceProvider',

    # Errors
    'CLIError',
    'ValidationFailedError',
    'CommandNotFoundError',
    'CommandExecutionError',
    'OperationCancelledError',
    'ExecutionTimeoutError',
    'ConcurrencyLimitError',
    'SetupError',
    'ServiceNotFoundError',

    # Config management
    'JsonConfigProvider',
    'ConfigError',
    'ConfigValidationError',
    'ConfigIOError',
    'sanitize_for_logging',

    # Output utilities
    'echo',
    'TerminalOutputFormatter',
]


def get_version() -> str:
    """Get toolkit version string"""
    return __version__
