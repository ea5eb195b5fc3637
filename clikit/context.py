"""
Execution context and service container

One ExecutionContext exists per command invocation. Child contexts share
the parent's cancellation token but get their own service scope, so
cancelling a parent reaches every descendant while registrations made in
a child never leak upward.
"""

import logging
import threading
import time
import uuid
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Sequence, Tuple

from .cancellation import CancellationToken
from .errors import ServiceNotFoundError
from .interfaces import ServiceProvider

if TYPE_CHECKING:
    from .interfaces import Command
    from .parser import ParseResult


class ServiceTokens:
    """Tokens under which the toolkit registers its own collaborators"""
    LOGGER = 'logger'
    CONFIG = 'config'
    OUTPUT = 'output'
    EXECUTOR = 'executor'


class ServiceContainer(ServiceProvider):
    """
    Registry with parent fallback

    Callables are treated as factories and invoked on every resolve unless
    registered as singletons; register ``lambda: fn`` to hand out a
    function itself.
    """

    def __init__(self, parent: Optional['ServiceContainer'] = None):
        self._parent: Optional[ServiceContainer] = parent
        self._services: Dict[str, Tuple[Any, bool]] = {}
        self._singletons: Dict[str, Any] = {}
        self._lock = threading.RLock()

    @property
    def parent(self) -> Optional['ServiceContainer']:
        return self._parent

    def register(self, token: str, implementation: Any, singleton: bool = False) -> None:
        with self._lock:
            self._services[token] = (implementation, singleton)
            self._singletons.pop(token, None)

    def resolve(self, token: str) -> Any:
        with self._lock:
            if token in self._singletons:
                return self._singletons[token]

            definition = self._services.get(token)
            if definition is None:
                if self._parent is not None:
                    return self._parent.resolve(token)
                raise ServiceNotFoundError(token)

            implementation, singleton = definition
            instance = implementation() if callable(implementation) else implementation
            if singleton:
                self._singletons[token] = instance
            return instance

    def has(self, token: str) -> bool:
        with self._lock:
            if token in self._services:
                return True
        return self._parent.has(token) if self._parent is not None else False

    def create_child(self) -> 'ServiceContainer':
        return ServiceContainer(parent=self)

    def __contains__(self, token: str) -> bool:
        return self.has(token)


class ExecutionContext:
    """Per-invocation state handed through the pipeline"""

    def __init__(self,
                 command: 'Command',
                 args: Optional[Mapping[str, Any]] = None,
                 options: Optional[Mapping[str, Any]] = None,
                 raw_args: Sequence[str] = (),
                 parent: Optional['ExecutionContext'] = None,
                 services: Optional[ServiceProvider] = None,
                 cancellation_token: Optional[CancellationToken] = None):
        self.id: str = f"exec_{uuid.uuid4().hex[:12]}"
        self.start_time: float = time.time()
        self.command: 'Command' = command
        self.args: Mapping[str, Any] = MappingProxyType(dict(args or {}))
        self.options: Mapping[str, Any] = MappingProxyType(dict(options or {}))
        self.raw_args: Tuple[str, ...] = tuple(raw_args)
        self.parent: Optional[ExecutionContext] = parent
        self.services: ServiceProvider = services if services is not None else ServiceContainer()
        self.cancellation_token: CancellationToken = (
            cancellation_token if cancellation_token is not None else CancellationToken()
        )
        self.metadata: Dict[str, Any] = {}

    @classmethod
    def create(cls, command: 'Command', parse_result: 'ParseResult',
               services: Optional[ServiceProvider] = None) -> 'ExecutionContext':
        """Build a context from a parse result"""
        return cls(
            command=command,
            args=parse_result.arguments,
            options=parse_result.options,
            raw_args=parse_result.raw_args,
            services=services,
        )

    @property
    def command_name(self) -> str:
        return getattr(self.command, 'name', '') or type(self.command).__name__

    def set_metadata(self, key: str, value: Any) -> None:
        self.metadata[key] = value

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    def create_child(self, command: 'Command',
                     args: Optional[Mapping[str, Any]] = None,
                     options: Optional[Mapping[str, Any]] = None,
                     raw_args: Optional[Sequence[str]] = None) -> 'ExecutionContext':
        """
        Create a context for a nested command

        The child shares this context's cancellation token and gets a child
        service scope.
        """
        logging.getLogger('clikit.context').debug(
            f"Creating child context of {self.id} for '{getattr(command, 'name', command)}'"
        )
        return ExecutionContext(
            command=command,
            args=args,
            options=options,
            raw_args=raw_args if raw_args is not None else self.raw_args,
            parent=self,
            services=self.services.create_child(),
            cancellation_token=self.cancellation_token,
        )

    def __repr__(self) -> str:
        return f"<ExecutionContext {self.id} command={self.command_name!r}>"
