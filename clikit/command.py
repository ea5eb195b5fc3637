"""
Command results, function-backed commands and the command registry
"""

import asyncio
import functools
import inspect
import logging
import threading
from contextvars import copy_context
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import CommandExecutionError
from .fields import ArgumentDefinition, OptionDefinition
from .interfaces import Command


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of a command invocation

    ``exit_code`` is advisory for process termination; check ``success``.
    Use ``dataclasses.replace`` to derive a modified result.
    """
    success: bool
    exit_code: int = 0
    data: Any = None
    message: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None, exit_code: int = 0) -> 'CommandResult':
        return cls(True, exit_code, data, message)

    @classmethod
    def failure(cls, message: Optional[str] = None, error: Optional[BaseException] = None,
                exit_code: int = 1, data: Any = None) -> 'CommandResult':
        if message is None and error is not None:
            message = str(error)
        return cls(False, exit_code, data, message, error)

    @classmethod
    def from_value(cls, value: Any) -> 'CommandResult':
        """
        Normalise a handler return value

        int is the exit code, False means exit code 1, None and True mean
        success, anything else becomes ``data``.
        """
        if isinstance(value, CommandResult):
            return value
        if value is None or value is True:
            return cls.ok()
        if value is False:
            return cls.failure(exit_code=1)
        if isinstance(value, int):
            return cls(value == 0, value)
        return cls.ok(data=value)


def is_async_function(func: Callable[..., Any]) -> bool:
    """Check if function is async (unwraps partials and decorated functions)"""
    target = func
    while isinstance(target, functools.partial):
        target = target.func
    target = inspect.unwrap(target)
    return asyncio.iscoroutinefunction(target)


def _identifier(name: str) -> str:
    return name.replace('-', '_')


class FunctionCommand(Command):
    """Adapt a plain or async function to the Command interface"""

    def __init__(self,
                 func: Callable[..., Any],
                 name: Optional[str] = None,
                 description: Optional[str] = None,
                 arguments: Sequence[ArgumentDefinition] = (),
                 options: Sequence[OptionDefinition] = (),
                 aliases: Sequence[str] = (),
                 examples: Sequence[str] = (),
                 hidden: bool = False):
        if not callable(func):
            raise TypeError("Command handler must be callable")

        self.func: Callable[..., Any] = func
        self.name: str = name or func.__name__.replace('_', '-')
        self.description: str = description if description is not None else \
            (inspect.getdoc(func) or '').split('\n')[0]
        self.arguments: Tuple[ArgumentDefinition, ...] = tuple(arguments)
        self.options: Tuple[OptionDefinition, ...] = tuple(options)
        self.aliases: Tuple[str, ...] = tuple(aliases)
        self.examples: Tuple[str, ...] = tuple(examples)
        self.hidden: bool = hidden
        self._signature: inspect.Signature = inspect.signature(func)
        self._logger: logging.Logger = logging.getLogger('clikit.command')

    def _bind(self, context: Any) -> Tuple[List[Any], Dict[str, Any]]:
        values: Dict[str, Any] = {}
        for key, value in context.args.items():
            values[_identifier(key)] = value
        for key, value in context.options.items():
            values.setdefault(_identifier(key), value)

        positional_args: List[Any] = []
        command_kwargs: Dict[str, Any] = {}
        missing: List[str] = []
        accepts_extra = False
        param_names = set()
        flag_names = {_identifier(o.name) for o in self.options if not o.takes_value}

        for param_name, param in self._signature.parameters.items():
            if param.kind == inspect.Parameter.VAR_POSITIONAL:
                continue
            if param.kind == inspect.Parameter.VAR_KEYWORD:
                accepts_extra = True
                continue

            param_names.add(param_name)
            if param_name in values:
                value = values[param_name]
            elif param_name == 'context':
                value = context
            elif param.default is not inspect.Parameter.empty:
                continue
            elif param_name in flag_names:
                # absent flag
                value = False
            else:
                missing.append(param_name)
                continue

            if param.kind == inspect.Parameter.POSITIONAL_ONLY:
                positional_args.append(value)
            else:
                command_kwargs[param_name] = value

        if missing:
            names = ', '.join(f"'{n}'" for n in missing)
            raise CommandExecutionError(
                f"Missing required arguments for command '{self.name}': {names}", self.name
            )

        if accepts_extra:
            for key, value in values.items():
                if key not in param_names:
                    command_kwargs[key] = value

        return positional_args, command_kwargs

    async def execute(self, context: Any) -> CommandResult:
        positional_args, command_kwargs = self._bind(context)

        if is_async_function(self.func):
            result = await self.func(*positional_args, **command_kwargs)
        else:
            ctx = copy_context()
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                None,
                lambda: ctx.run(functools.partial(self.func, *positional_args, **command_kwargs))
            )
            if inspect.isawaitable(result):
                result = await result

        return CommandResult.from_value(result)

    def __repr__(self) -> str:
        return f"<FunctionCommand {self.name!r}>"


def levenshtein_distance(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)
    if len(s2) == 0:
        return len(s1)
    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row
    return previous_row[-1]


class CommandRegistry:
    """Thread-safe command registry with aliases"""

    def __init__(self) -> None:
        self._commands: Dict[str, Command] = {}
        self._aliases: Dict[str, str] = {}
        self._logger: logging.Logger = logging.getLogger('clikit.registry')
        self._lock = threading.Lock()

    def register(self, command: Command) -> None:
        """Register command under its name and aliases; re-registering replaces it"""
        name = command.name
        if not name:
            raise ValueError("Command name must be a non-empty string")

        with self._lock:
            if name in self._commands:
                for alias, target in list(self._aliases.items()):
                    if target == name:
                        del self._aliases[alias]
                self._logger.debug(f"Replacing command: {name}")

            if self._aliases.pop(name, None) is not None:
                self._logger.warning(f"Command '{name}' shadows an existing alias")
            self._commands[name] = command

            for alias in command.aliases:
                if alias in self._commands:
                    self._logger.warning(f"Alias '{alias}' conflicts with existing command, skipping")
                    continue
                old_target = self._aliases.get(alias)
                if old_target is not None and old_target != name:
                    self._logger.warning(
                        f"Alias '{alias}' previously pointed to '{old_target}', "
                        f"now reassigning to '{name}'"
                    )
                self._aliases[alias] = name
                self._logger.debug(f"Registered alias '{alias}' for command '{name}'")

            self._logger.info(f"Registered command: {name}")

    def get(self, name: str) -> Optional[Command]:
        """Get command by name or alias"""
        with self._lock:
            if name in self._commands:
                return self._commands[name]
            real_name = self._aliases.get(name)
            return self._commands.get(real_name) if real_name is not None else None

    def remove(self, name: str) -> bool:
        with self._lock:
            if name not in self._commands:
                return False
            del self._commands[name]
            for alias, target in list(self._aliases.items()):
                if target == name:
                    del self._aliases[alias]
            self._logger.info(f"Removed command: {name}")
            return True

    def list_commands(self, include_hidden: bool = False) -> List[str]:
        with self._lock:
            return sorted(
                name for name, command in self._commands.items()
                if include_hidden or not command.hidden
            )

    def commands(self) -> List[Command]:
        with self._lock:
            return [self._commands[name] for name in sorted(self._commands)]

    def suggest(self, name: str, max_suggestions: int = 3) -> List[str]:
        """Find similar command names using Levenshtein distance"""
        name_lower = name.lower()
        with self._lock:
            candidates = list(self._commands) + list(self._aliases)

        scored = []
        for candidate in candidates:
            distance = levenshtein_distance(name_lower, candidate.lower())
            if distance <= 3 and candidate[:1].lower() == name_lower[:1]:
                target = self._aliases.get(candidate, candidate)
                scored.append((distance, target))
        scored.sort(key=lambda x: (x[0], x[1]))

        suggestions: List[str] = []
        for _, target in scored:
            if target not in suggestions and target != name:
                suggestions.append(target)
        return suggestions[:max_suggestions]

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        return len(self._commands)
