"""Shared pytest fixtures and helpers for the clikit test suite.

Guidelines
----------
* No real terminal: formatters are built with colors disabled.
* No environment leakage: parsers and applications get an explicit env.
* Async tests are marked with ``@pytest.mark.asyncio``.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional

import pytest

from clikit.command import CommandResult
from clikit.context import ExecutionContext
from clikit.interfaces import Command


class RecordingCommand(Command):
    """Command whose hooks append to a shared ``calls`` list"""

    def __init__(self,
                 name: str = 'record',
                 result: Any = None,
                 error: Optional[BaseException] = None,
                 setup_error: Optional[BaseException] = None,
                 valid: bool = True,
                 calls: Optional[List[str]] = None):
        self.name = name
        self.result = result
        self.error = error
        self.setup_error = setup_error
        self.valid = valid
        self.calls: List[str] = calls if calls is not None else []

    async def validate(self, context: ExecutionContext) -> bool:
        self.calls.append('validate')
        return self.valid

    async def setup(self) -> None:
        self.calls.append('setup')
        if self.setup_error is not None:
            raise self.setup_error

    async def execute(self, context: ExecutionContext) -> Any:
        self.calls.append('execute')
        if self.error is not None:
            raise self.error
        return self.result if self.result is not None else CommandResult.ok()

    async def cleanup(self) -> None:
        self.calls.append('cleanup')


class BlockingCommand(Command):
    """Command that waits on an event (or forever) and records how it ended"""

    def __init__(self, name: str = 'block', release: Optional[asyncio.Event] = None):
        self.name = name
        self.release = release
        self.started = 0
        self.cancelled = False
        self.cleaned_up = False

    async def execute(self, context: ExecutionContext) -> CommandResult:
        self.started += 1
        try:
            if self.release is not None:
                await self.release.wait()
            else:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return CommandResult.ok()

    async def cleanup(self) -> None:
        self.cleaned_up = True


class PollingCommand(Command):
    """Command that cooperatively polls its cancellation token"""

    name = 'poll'

    def __init__(self, interval: float = 0.01):
        self.interval = interval

    async def execute(self, context: ExecutionContext) -> CommandResult:
        while True:
            context.cancellation_token.throw_if_cancelled()
            await asyncio.sleep(self.interval)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0)


@pytest.fixture
def calls() -> List[str]:
    return []


@pytest.fixture
def make_context() -> Callable[..., ExecutionContext]:
    def factory(command: Optional[Command] = None, **kwargs: Any) -> ExecutionContext:
        return ExecutionContext(command=command or RecordingCommand(), **kwargs)
    return factory


@pytest.fixture(autouse=True)
def _reset_clikit_logging():
    """CLI() installs a stream handler bound to the current stderr; drop it between tests"""
    logger = logging.getLogger('clikit')
    level = logger.level
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(level)
