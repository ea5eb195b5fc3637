"""Tests for command results, function-backed commands and the registry."""

import contextvars
import functools
import threading

import pytest

from clikit.command import (
    CommandRegistry, CommandResult, FunctionCommand, is_async_function, levenshtein_distance
)
from clikit.context import ExecutionContext
from clikit.errors import CommandExecutionError
from clikit.fields import OptionDefinition

from conftest import RecordingCommand

request_id: contextvars.ContextVar = contextvars.ContextVar('request_id', default=None)


def _context(command, args=None, options=None) -> ExecutionContext:
    return ExecutionContext(command, args=args, options=options)


# ---------------------------------------------------------------------------
# CommandResult
# ---------------------------------------------------------------------------

class TestCommandResult:
    @pytest.mark.parametrize('value, success, exit_code', [
        (None, True, 0),
        (True, True, 0),
        (False, False, 1),
        (0, True, 0),
        (2, False, 2),
    ])
    def test_from_value(self, value, success, exit_code) -> None:
        result = CommandResult.from_value(value)
        assert result.success is success
        assert result.exit_code == exit_code

    def test_other_values_become_data(self) -> None:
        result = CommandResult.from_value({'rows': 3})
        assert result.success
        assert result.data == {'rows': 3}

    def test_result_passes_through(self) -> None:
        original = CommandResult.ok(message='fine')
        assert CommandResult.from_value(original) is original

    def test_failure_message_defaults_to_error_text(self) -> None:
        result = CommandResult.failure(error=RuntimeError('disk full'))
        assert result.message == 'disk full'
        assert result.exit_code == 1

    def test_frozen(self) -> None:
        with pytest.raises(AttributeError):
            CommandResult.ok().success = False  # type: ignore[misc]


# ---------------------------------------------------------------------------
# FunctionCommand
# ---------------------------------------------------------------------------

class TestFunctionCommand:
    def test_name_and_description_from_function(self) -> None:
        def list_users():
            """List all users.

            Longer text that is not part of the summary.
            """

        command = FunctionCommand(list_users)
        assert command.name == 'list-users'
        assert command.description == 'List all users.'

    def test_non_callable_rejected(self) -> None:
        with pytest.raises(TypeError):
            FunctionCommand('nope')  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_sync_function_binds_arguments_and_options(self) -> None:
        def greet(name, dry_run=False):
            return CommandResult.ok(data=(name, dry_run))

        command = FunctionCommand(greet)
        result = await command.execute(_context(command, {'name': 'ada'}, {'dry-run': True}))

        assert result.data == ('ada', True)

    @pytest.mark.asyncio
    async def test_sync_function_runs_off_loop_with_context_vars(self) -> None:
        loop_thread = threading.get_ident()

        def where():
            return threading.get_ident(), request_id.get()

        command = FunctionCommand(where)
        request_id.set('req-7')
        result = await command.execute(_context(command))

        worker_thread, seen = result.data
        assert worker_thread != loop_thread
        assert seen == 'req-7'

    @pytest.mark.asyncio
    async def test_async_function_and_context_injection(self) -> None:
        async def show(context, verbose=False):
            return {'id': context.id, 'verbose': verbose}

        command = FunctionCommand(show)
        context = _context(command, options={'verbose': True})
        result = await command.execute(context)

        assert result.data == {'id': context.id, 'verbose': True}

    @pytest.mark.asyncio
    async def test_extra_values_go_to_var_keyword(self) -> None:
        def collect(name, **extra):
            return extra

        command = FunctionCommand(collect)
        result = await command.execute(_context(command, {'name': 'x'}, {'log-level': 'debug'}))

        assert result.data == {'log_level': 'debug'}

    @pytest.mark.asyncio
    async def test_absent_flag_binds_false(self) -> None:
        def build(target, verbose):
            return CommandResult.ok(data=(target, verbose))

        command = FunctionCommand(build, options=[OptionDefinition('verbose', alias='v', flag=True)])
        result = await command.execute(_context(command, {'target': 'app'}))

        assert result.data == ('app', False)

    @pytest.mark.asyncio
    async def test_parameter_default_wins_over_absent_flag(self) -> None:
        def build(color=True):
            return color

        command = FunctionCommand(build, options=[OptionDefinition('color', flag=True)])
        assert (await command.execute(_context(command))).data is True

    @pytest.mark.asyncio
    async def test_missing_parameter(self) -> None:
        def needs(target):
            return 0

        command = FunctionCommand(needs)
        with pytest.raises(CommandExecutionError) as exc_info:
            await command.execute(_context(command))
        assert "'target'" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_int_return_is_exit_code(self) -> None:
        command = FunctionCommand(lambda: 3, name='three')
        result = await command.execute(_context(command))
        assert not result.success
        assert result.exit_code == 3

    def test_is_async_function_unwraps_partials(self) -> None:
        async def job(a, b):
            return a + b

        assert is_async_function(functools.partial(job, 1))
        assert not is_async_function(functools.partial(lambda a: a, 1))


# ---------------------------------------------------------------------------
# CommandRegistry
# ---------------------------------------------------------------------------

class TestCommandRegistry:
    def _command(self, name, aliases=(), hidden=False):
        command = RecordingCommand(name=name)
        command.aliases = aliases
        command.hidden = hidden
        return command

    def test_register_and_lookup_by_alias(self) -> None:
        registry = CommandRegistry()
        build = self._command('build', aliases=('b', 'make'))
        registry.register(build)

        assert registry.get('build') is build
        assert registry.get('make') is build
        assert 'b' in registry
        assert registry.get('deploy') is None
        assert len(registry) == 1

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            CommandRegistry().register(RecordingCommand(name=''))

    def test_re_registration_replaces_aliases(self) -> None:
        registry = CommandRegistry()
        registry.register(self._command('build', aliases=('b',)))
        replacement = self._command('build', aliases=('mk',))
        registry.register(replacement)

        assert registry.get('build') is replacement
        assert registry.get('b') is None
        assert registry.get('mk') is replacement

    def test_command_name_wins_over_alias(self) -> None:
        registry = CommandRegistry()
        registry.register(self._command('status', aliases=('st',)))
        stage = self._command('st')
        registry.register(stage)

        assert registry.get('st') is stage

    def test_alias_never_shadows_existing_command(self) -> None:
        registry = CommandRegistry()
        deploy = self._command('deploy')
        registry.register(deploy)
        registry.register(self._command('release', aliases=('deploy',)))

        assert registry.get('deploy') is deploy

    def test_remove_drops_aliases(self) -> None:
        registry = CommandRegistry()
        registry.register(self._command('build', aliases=('b',)))
        assert registry.remove('build') is True
        assert registry.remove('build') is False
        assert registry.get('b') is None

    def test_list_commands_hides_hidden(self) -> None:
        registry = CommandRegistry()
        registry.register(self._command('zeta'))
        registry.register(self._command('alpha'))
        registry.register(self._command('internal', hidden=True))

        assert registry.list_commands() == ['alpha', 'zeta']
        assert registry.list_commands(include_hidden=True) == ['alpha', 'internal', 'zeta']
        assert [c.name for c in registry.commands()] == ['alpha', 'internal', 'zeta']

    def test_suggestions(self) -> None:
        registry = CommandRegistry()
        for name in ('build', 'bundle', 'deploy'):
            registry.register(self._command(name))
        registry.register(self._command('status', aliases=('stat',)))

        assert registry.suggest('biuld') == ['build']
        assert registry.suggest('stats') == ['status']
        assert registry.suggest('xyz') == []

    def test_levenshtein_distance(self) -> None:
        assert levenshtein_distance('kitten', 'sitting') == 3
        assert levenshtein_distance('', 'abc') == 3
        assert levenshtein_distance('same', 'same') == 0
