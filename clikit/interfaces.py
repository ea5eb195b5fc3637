"""
Core interfaces for clikit

Defines abstract base classes that establish contracts for toolkit components.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Union

if TYPE_CHECKING:
    from .command import CommandResult
    from .context import ExecutionContext
    from .fields import ArgumentDefinition, OptionDefinition

NextHandler = Callable[[], Awaitable['CommandResult']]


class ConfigProvider(ABC):
    """
    Dot-path access to the toolkit's settings

    Keys address nested sections, e.g. ``executor.max_concurrent``.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """
        Look up ``key``

        Args:
            key: Dot-separated path into the settings
            default: Returned when any segment of the path is missing

        Returns:
            A copy of the stored value, or ``default``
        """
        pass

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store ``value`` at ``key``, creating missing sections"""
        pass

    @abstractmethod
    def save(self) -> None:
        """
        Write pending changes to the backing store

        Raises:
            ConfigError: The settings are invalid or cannot be written
        """
        pass

    @abstractmethod
    def get_all(self) -> Dict[str, Any]:
        """Copy of every setting"""
        pass


class OutputFormatter(ABC):
    """Turns text, parse errors and command results into terminal output"""

    @abstractmethod
    def format(self, text: str, style: Optional[str] = None) -> str:
        """
        Apply a named style to ``text``

        Args:
            text: Text to style
            style: Semantic style or color name; None leaves text as is

        Returns:
            Styled text, plain when the terminal cannot render styles
        """
        pass

    @abstractmethod
    def supports_color(self) -> bool:
        """Whether styled output will contain ANSI codes"""
        pass

    @abstractmethod
    def format_validation_errors(self, errors: Iterable[Any]) -> str:
        """
        Render field-level validation errors

        Args:
            errors: FieldError records from a parse result

        Returns:
            Multi-line text
        """
        pass

    @abstractmethod
    def format_result(self, result: 'CommandResult', verbose: bool = False) -> Optional[str]:
        """
        Render a command result

        Args:
            result: Result to render
            verbose: Include diagnostic details of the error

        Returns:
            Text to print, or None when there is nothing to show
        """
        pass


class ServiceProvider(ABC):
    """
    Abstract interface for dependency lookup

    Tokens are plain strings; see ``ServiceTokens`` for the ones the
    toolkit registers itself.
    """

    @abstractmethod
    def register(self, token: str, implementation: Any, singleton: bool = False) -> None:
        """
        Register a service

        Args:
            token: Lookup key
            implementation: Instance, or a zero-argument factory callable
            singleton: Cache the first value produced by a factory
        """
        pass

    @abstractmethod
    def resolve(self, token: str) -> Any:
        """
        Resolve a service by token

        Raises:
            ServiceNotFoundError: If nothing is registered under the token
        """
        pass

    @abstractmethod
    def has(self, token: str) -> bool:
        pass

    @abstractmethod
    def create_child(self) -> 'ServiceProvider':
        """Create a scope that falls back to this one for lookups"""
        pass


class Command(ABC):
    """
    Abstract interface for executable commands

    Only ``execute`` is mandatory. The default hooks do nothing, so
    subclasses override just the ones they need.
    """

    name: str = ''
    description: str = ''
    arguments: Sequence['ArgumentDefinition'] = ()
    options: Sequence['OptionDefinition'] = ()
    aliases: Sequence[str] = ()
    examples: Sequence[str] = ()
    hidden: bool = False

    @abstractmethod
    async def execute(self, context: 'ExecutionContext') -> 'CommandResult':
        """
        Run the command

        Args:
            context: Execution context with resolved arguments and options

        Returns:
            Command result
        """
        pass

    async def validate(self, context: 'ExecutionContext') -> bool:
        """Return False (or raise) to reject the invocation before it runs"""
        return True

    async def setup(self) -> None:
        pass

    async def cleanup(self) -> None:
        pass


class Middleware(ABC):
    """
    A pipeline stage wrapped around command execution

    Plain callables taking ``(context, next_handler)`` are accepted wherever
    a Middleware is.
    """

    @abstractmethod
    async def execute(self, context: 'ExecutionContext', next_handler: NextHandler) -> 'CommandResult':
        """
        Run this stage

        Args:
            context: Current execution context
            next_handler: Continues the chain; not calling it short-circuits

        Returns:
            The result of ``next_handler()``, possibly replaced
        """
        pass


MiddlewareLike = Union[Middleware, Callable[..., Any]]

__all__: List[str] = [
    'ConfigProvider', 'OutputFormatter', 'ServiceProvider', 'Command',
    'Middleware', 'MiddlewareLike', 'NextHandler'
]
