"""Tests for the cooperative cancellation token."""

import pytest

from clikit.cancellation import CancellationToken
from clikit.errors import OperationCancelledError


class TestCancellationToken:
    def test_starts_active(self) -> None:
        token = CancellationToken()
        assert not token.is_cancelled
        assert token.reason is None
        token.throw_if_cancelled()

    def test_cancel_is_idempotent_and_keeps_first_reason(self) -> None:
        token = CancellationToken()
        fired = []
        token.on_cancelled(lambda: fired.append('a'))
        token.on_cancelled(lambda: fired.append('b'))

        assert token.cancel('first') is True
        assert token.cancel('second') is False

        assert token.is_cancelled
        assert token.reason == 'first'
        assert fired == ['a', 'b']

    def test_callback_registered_after_cancel_runs_immediately(self) -> None:
        token = CancellationToken()
        token.cancel('done')
        fired = []
        token.on_cancelled(lambda: fired.append(token.reason))
        assert fired == ['done']

    def test_failing_callback_does_not_block_others(self) -> None:
        token = CancellationToken()
        fired = []

        def boom() -> None:
            raise RuntimeError('callback failed')

        token.on_cancelled(boom)
        token.on_cancelled(lambda: fired.append(True))
        token.cancel()
        assert fired == [True]

    def test_throw_if_cancelled_carries_reason(self) -> None:
        token = CancellationToken()
        token.cancel('user abort')
        with pytest.raises(OperationCancelledError) as exc_info:
            token.throw_if_cancelled()
        assert exc_info.value.reason == 'user abort'
        assert str(exc_info.value).startswith(OperationCancelledError.MARKER)
        assert 'user abort' in str(exc_info.value)

    def test_cancel_without_reason(self) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError) as exc_info:
            token.throw_if_cancelled()
        assert str(exc_info.value) == OperationCancelledError.MARKER

    def test_non_callable_callback_rejected(self) -> None:
        with pytest.raises(TypeError):
            CancellationToken().on_cancelled('not callable')  # type: ignore[arg-type]

    def test_repr_shows_state(self) -> None:
        token = CancellationToken()
        assert 'active' in repr(token)
        token.cancel('x')
        assert "reason='x'" in repr(token)
