"""Tests for cooperative cancellation scopes."""

import threading
from unittest.mock import Mock

import pytest

from buildmedia.services.cancellation import CancellationScope, check_cancelled
from buildmedia.storage.exceptions import OperationCanceledError


class TestCancellationScope:
    """Tests for CancellationScope."""

    def test_new_scope_is_not_cancelled(self):
        scope = CancellationScope("extract")
        assert scope.is_cancelled is False
        scope.raise_if_cancelled()

    def test_cancel_raises_on_check(self):
        scope = CancellationScope("extract")
        scope.cancel()
        with pytest.raises(OperationCanceledError, match="extract cancelled"):
            scope.raise_if_cancelled()

    def test_callbacks_run_once(self):
        scope = CancellationScope()
        callback = Mock()
        scope.register(callback)

        scope.cancel()
        scope.cancel()

        callback.assert_called_once_with()

    def test_register_after_cancel_runs_immediately(self):
        scope = CancellationScope()
        scope.cancel()
        callback = Mock()

        scope.register(callback)

        callback.assert_called_once_with()

    def test_unregister_prevents_callback(self):
        scope = CancellationScope()
        callback = Mock()
        unregister = scope.register(callback)

        unregister()
        scope.cancel()

        callback.assert_not_called()

    def test_failing_callback_does_not_stop_others(self):
        scope = CancellationScope()
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        scope.register(broken)
        scope.register(healthy)

        scope.cancel()

        healthy.assert_called_once_with()

    def test_scopes_are_independent(self):
        first = CancellationScope("first")
        second = CancellationScope("second")
        first.cancel()
        assert second.is_cancelled is False

    def test_wait_returns_when_cancelled_from_other_thread(self):
        scope = CancellationScope()
        timer = threading.Timer(0.05, scope.cancel)
        timer.start()
        assert scope.wait(timeout=5) is True
        timer.join()


def test_check_cancelled_accepts_none():
    check_cancelled(None)


def test_check_cancelled_raises():
    scope = CancellationScope()
    scope.cancel()
    with pytest.raises(OperationCanceledError):
        check_cancelled(scope)
