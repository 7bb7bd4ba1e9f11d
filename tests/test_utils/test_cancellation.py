"""Tests for cooperative cancellation tokens."""

import pytest

from workspace_ssh.errors import Cancelled
from workspace_ssh.utils.cancellation import NONE, CancellationTokenSource


def test_token_starts_uncancelled() -> None:
    """A fresh token does not raise."""
    source = CancellationTokenSource()

    assert not source.token.is_cancelled
    source.token.raise_if_cancelled()


def test_cancel_raises_and_runs_callbacks_once() -> None:
    """Callbacks run once even if cancel() is repeated."""
    calls: list[str] = []
    source = CancellationTokenSource()
    source.token.on_cancel(lambda: calls.append("x"))

    source.cancel()
    source.cancel()

    assert calls == ["x"]
    with pytest.raises(Cancelled):
        source.token.raise_if_cancelled()


def test_callback_after_cancel_runs_immediately() -> None:
    """Registering on a cancelled token fires at once."""
    calls: list[str] = []
    source = CancellationTokenSource()
    source.cancel()

    source.token.on_cancel(lambda: calls.append("late"))

    assert calls == ["late"]


def test_removed_callback_not_run() -> None:
    """The remover returned by on_cancel detaches the callback."""
    calls: list[str] = []
    source = CancellationTokenSource()
    remove = source.token.on_cancel(lambda: calls.append("x"))

    remove()
    source.cancel()

    assert calls == []


def test_failing_callback_does_not_stop_others() -> None:
    """A raising callback is logged and the rest still run."""
    calls: list[str] = []
    source = CancellationTokenSource()

    def boom() -> None:
        raise RuntimeError("boom")

    source.token.on_cancel(boom)
    source.token.on_cancel(lambda: calls.append("after"))
    source.cancel()

    assert calls == ["after"]


def test_linked_source_follows_parent() -> None:
    """Cancelling the parent cancels the child, until close()."""
    parent = CancellationTokenSource()
    child = CancellationTokenSource(parent.token)
    detached = CancellationTokenSource(parent.token)
    detached.close()

    parent.cancel()

    assert child.token.is_cancelled
    assert not detached.token.is_cancelled


def test_child_cancel_does_not_reach_parent() -> None:
    """Cancellation only flows downward."""
    parent = CancellationTokenSource()
    child = CancellationTokenSource(parent.token)

    child.cancel()

    assert not parent.token.is_cancelled


def test_none_token_never_cancelled() -> None:
    """NONE is a never-cancelled token."""
    assert not NONE.is_cancelled
