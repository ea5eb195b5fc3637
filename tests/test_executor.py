"""Tests for the command executor: admission control, timeouts, cancellation and stats."""

import asyncio
import logging
import time

import pytest

from clikit.cancellation import CancellationToken
from clikit.command import CommandResult
from clikit.context import ExecutionContext, ServiceContainer
from clikit.errors import ConcurrencyLimitError, ExecutionTimeoutError, OperationCancelledError
from clikit.executor import CONTINUE_ON_ERROR, CommandExecutor, ExecutionOptions, ExecutionRequest
from clikit.interfaces import Command
from clikit.pipeline import ExecutionPipeline

from conftest import BlockingCommand, PollingCommand, RecordingCommand, wait_until


class TestExecuteAsync:
    @pytest.mark.asyncio
    async def test_successful_execution_updates_stats(self) -> None:
        executor = CommandExecutor()
        command = RecordingCommand(result=CommandResult.ok(data='done'))

        result = await executor.execute_async(command, args={'a': 1})

        assert result.success
        assert result.data == 'done'
        stats = executor.get_stats()
        assert stats.total_executions == 1
        assert stats.successful_executions == 1
        assert stats.failed_executions == 0
        assert stats.concurrent_executions == 0
        assert stats.max_concurrent_executions == 1

    @pytest.mark.asyncio
    async def test_failures_are_counted(self) -> None:
        executor = CommandExecutor()
        await executor.execute_async(RecordingCommand(error=RuntimeError('x')))
        await executor.execute_async(RecordingCommand(result=False))
        stats = executor.get_stats()
        assert stats.failed_executions == 2
        assert stats.successful_executions == 0

    @pytest.mark.asyncio
    async def test_setup_failure_is_counted_as_failed(self) -> None:
        executor = CommandExecutor()
        command = RecordingCommand(setup_error=RuntimeError('boom'))

        result = await executor.execute_async(command)

        assert not result.success
        assert result.message == 'Setup failed: boom'
        assert 'execute' not in command.calls
        stats = executor.get_stats()
        assert stats.successful_executions == 0
        assert stats.failed_executions == 1
        assert stats.concurrent_executions == 0

    @pytest.mark.asyncio
    async def test_exception_without_error_middleware_becomes_failure(self) -> None:
        executor = CommandExecutor(default_pipeline=ExecutionPipeline())

        result = await executor.execute_async(RecordingCommand(error=ValueError('bad input')))

        assert not result.success
        assert result.message == 'bad input'
        assert isinstance(result.error, ValueError)

    @pytest.mark.asyncio
    async def test_options_pass_services_and_metadata(self) -> None:
        seen = {}

        class Inspecting(Command):
            name = 'inspect'

            async def execute(self, context: ExecutionContext) -> CommandResult:
                seen['db'] = context.services.resolve('db')
                seen['trace'] = context.get_metadata('trace_id')
                return CommandResult.ok()

        services = ServiceContainer()
        services.register('db', 'sqlite://')
        executor = CommandExecutor()

        await executor.execute_async(Inspecting(), execution_options=ExecutionOptions(
            services=services, metadata={'trace_id': 't-1'}
        ))

        assert seen == {'db': 'sqlite://', 'trace': 't-1'}

    @pytest.mark.asyncio
    async def test_each_execution_gets_child_service_scope(self) -> None:
        class Registering(Command):
            name = 'register'

            async def execute(self, context: ExecutionContext) -> CommandResult:
                context.services.register('scoped', 'value')
                return CommandResult.ok(data=context.services.resolve('shared'))

        root = ServiceContainer()
        root.register('shared', 'root')
        executor = CommandExecutor(services=root)

        result = await executor.execute_async(Registering())

        assert result.data == 'root'
        assert not root.has('scoped')

    def test_invalid_configuration(self) -> None:
        with pytest.raises(ValueError):
            CommandExecutor(max_concurrent=0)
        with pytest.raises(ValueError):
            CommandExecutor(timeout=0)


class TestAdmissionControl:
    @pytest.mark.asyncio
    async def test_third_execution_rejected_while_two_run(self) -> None:
        release = asyncio.Event()
        command = BlockingCommand(release=release)
        executor = CommandExecutor(max_concurrent=2)

        first = asyncio.ensure_future(executor.execute_async(command))
        second = asyncio.ensure_future(executor.execute_async(command))
        await wait_until(lambda: command.started == 2)

        assert not executor.can_execute()
        with pytest.raises(ConcurrencyLimitError) as exc_info:
            await executor.execute_async(command)
        assert exc_info.value.limit == 2
        assert not first.done() and not second.done()

        release.set()
        results = await asyncio.gather(first, second)
        assert all(r.success for r in results)
        assert executor.can_execute()
        stats = executor.get_stats()
        assert stats.total_executions == 2
        assert stats.max_concurrent_executions == 2

    @pytest.mark.asyncio
    async def test_concurrent_batch_reports_rejections_as_results(self) -> None:
        release = asyncio.Event()
        command = BlockingCommand(release=release)
        executor = CommandExecutor(max_concurrent=1)
        requests = [ExecutionRequest(command) for _ in range(3)]

        batch = asyncio.ensure_future(executor.execute_concurrent(requests))
        await wait_until(lambda: command.started == 1)
        release.set()
        results = await batch

        assert len(results) == 3
        assert [r.success for r in results] == [True, False, False]
        assert all(isinstance(r.error, ConcurrencyLimitError) for r in results[1:])

    @pytest.mark.asyncio
    async def test_concurrent_batch_runs_in_parallel(self) -> None:
        executor = CommandExecutor(max_concurrent=5)

        class Sleeper(Command):
            name = 'sleeper'

            async def execute(self, context: ExecutionContext) -> CommandResult:
                await asyncio.sleep(0.05)
                return CommandResult.ok(data=context.args['n'])

        started = time.perf_counter()
        results = await executor.execute_concurrent(
            [ExecutionRequest(Sleeper(), args={'n': n}) for n in range(4)]
        )

        assert [r.data for r in results] == [0, 1, 2, 3]
        assert time.perf_counter() - started < 0.5
        assert executor.get_stats().max_concurrent_executions == 4


class TestSequential:
    @pytest.mark.asyncio
    async def test_stops_at_first_failure(self) -> None:
        executor = CommandExecutor()
        third = RecordingCommand(name='third')
        requests = [
            ExecutionRequest(RecordingCommand(name='first')),
            ExecutionRequest(RecordingCommand(name='second', result=False)),
            ExecutionRequest(third),
        ]

        results = await executor.execute_sequential(requests)

        assert [r.success for r in results] == [True, False]
        assert third.calls == []

    @pytest.mark.asyncio
    async def test_continue_on_error(self) -> None:
        executor = CommandExecutor()
        requests = [
            ExecutionRequest(RecordingCommand(result=False), execution_options=ExecutionOptions(
                metadata={CONTINUE_ON_ERROR: True}
            )),
            ExecutionRequest(RecordingCommand()),
        ]

        results = await executor.execute_sequential(requests)

        assert [r.success for r in results] == [False, True]


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_hanging_command_times_out(self) -> None:
        command = BlockingCommand()
        executor = CommandExecutor()

        started = time.perf_counter()
        result = await executor.execute_async(command, execution_options=ExecutionOptions(timeout=0.05))
        elapsed = time.perf_counter() - started

        assert not result.success
        assert isinstance(result.error, ExecutionTimeoutError)
        assert result.error.timeout == 0.05
        assert OperationCancelledError.MARKER in result.message
        assert elapsed < 1.0
        assert executor.get_stats().failed_executions == 1
        assert executor.get_stats().concurrent_executions == 0

    @pytest.mark.asyncio
    async def test_timed_out_work_is_interrupted_and_cleaned_up(self) -> None:
        command = BlockingCommand()
        executor = CommandExecutor(timeout=0.05)

        await executor.execute_async(command)

        assert command.cancelled
        assert command.cleaned_up

    @pytest.mark.asyncio
    async def test_timeout_trips_cancellation_token(self) -> None:
        command = BlockingCommand()
        executor = CommandExecutor()
        context = ExecutionContext(command)

        await executor.execute_with_context(context, timeout=0.05)

        assert context.cancellation_token.is_cancelled
        assert 'timeout' in context.cancellation_token.reason

    @pytest.mark.asyncio
    async def test_late_failure_after_timeout_is_retrieved(self, caplog) -> None:
        caplog.set_level(logging.DEBUG, logger='clikit.executor')
        release = asyncio.Event()

        class StubbornCommand(Command):
            name = 'stubborn'

            async def execute(self, context: ExecutionContext) -> CommandResult:
                try:
                    await asyncio.sleep(3600)
                except asyncio.CancelledError:
                    pass
                await release.wait()
                raise RuntimeError('late failure')

        executor = CommandExecutor(default_pipeline=ExecutionPipeline(), grace_period=0.01)
        result = await executor.execute_async(StubbornCommand(), execution_options=ExecutionOptions(timeout=0.05))
        assert isinstance(result.error, ExecutionTimeoutError)

        release.set()
        await wait_until(lambda: 'late failure' in caplog.text)

        assert 'after timeout' in caplog.text

    @pytest.mark.asyncio
    async def test_fast_command_unaffected_by_timeout(self) -> None:
        executor = CommandExecutor(timeout=1.0)
        result = await executor.execute_async(RecordingCommand(result=CommandResult.ok(data=1)))
        assert result.success
        assert result.data == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_running_execution(self) -> None:
        executor = CommandExecutor()
        task = asyncio.ensure_future(executor.execute_async(PollingCommand()))
        await wait_until(lambda: len(executor.get_running_executions()) == 1)

        running = executor.get_running_executions()[0]
        assert running.command_name == 'poll'
        assert running.duration >= 0
        assert executor.cancel_execution(running.id, 'operator request') is True

        result = await task
        assert not result.success
        assert isinstance(result.error, OperationCancelledError)
        assert result.error.reason == 'operator request'
        assert executor.get_running_executions() == []

    def test_cancel_unknown_execution(self) -> None:
        assert CommandExecutor().cancel_execution('exec_missing') is False

    @pytest.mark.asyncio
    async def test_cancel_all_and_wait(self) -> None:
        executor = CommandExecutor()
        tasks = [asyncio.ensure_future(executor.execute_async(PollingCommand())) for _ in range(3)]
        await wait_until(lambda: executor.get_stats().concurrent_executions == 3)

        assert executor.cancel_all_executions('shutdown') == 3
        await executor.wait_for_all()

        assert all(task.done() for task in tasks)
        assert all(not task.result().success for task in tasks)

    @pytest.mark.asyncio
    async def test_external_token_is_used(self) -> None:
        token = CancellationToken()
        token.cancel('pre-cancelled')
        command = RecordingCommand()

        result = await CommandExecutor().execute_async(
            command, execution_options=ExecutionOptions(cancellation_token=token)
        )

        assert isinstance(result.error, OperationCancelledError)
        assert 'execute' not in command.calls


class TestStats:
    @pytest.mark.asyncio
    async def test_reset_stats(self) -> None:
        executor = CommandExecutor()
        await executor.execute_async(RecordingCommand())
        assert executor.get_stats().average_execution_time >= 0

        executor.reset_stats()

        stats = executor.get_stats()
        assert stats.total_executions == 0
        assert stats.average_execution_time == 0.0
        assert stats.max_concurrent_executions == 0
