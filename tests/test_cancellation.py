"""
Tests for hierarchical cancellation tokens.
"""

import asyncio

import pytest

from flowforge.graph.cancellation import CancellationToken
from flowforge.graph.errors import CancellationError


def test_cancel_sets_reason():
    token = CancellationToken()
    assert not token.cancelled

    token.cancel("stop")
    assert token.cancelled
    assert token.reason == "stop"


def test_default_reason_and_first_reason_wins():
    token = CancellationToken()
    token.cancel()
    token.cancel("later")
    assert token.reason == "Execution cancelled"


def test_parent_cancels_children_but_not_the_reverse():
    root = CancellationToken()
    child = root.child()
    grandchild = child.child()

    child.cancel("child only")
    assert not root.cancelled
    assert grandchild.cancelled
    assert grandchild.reason == "child only"

    sibling = root.child()
    root.cancel("everything")
    assert sibling.cancelled
    assert sibling.reason == "everything"


def test_child_of_cancelled_parent_starts_cancelled():
    root = CancellationToken()
    root.cancel("gone")
    assert root.child().cancelled


def test_closed_child_is_detached():
    root = CancellationToken()
    child = root.child()
    child.close()

    root.cancel()
    assert not child.cancelled


def test_callbacks():
    token = CancellationToken()
    reasons = []
    token.add_callback(reasons.append)
    token.cancel("x")
    token.add_callback(reasons.append)
    assert reasons == ["x", "x"]


def test_raise_if_cancelled():
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel("halt")
    with pytest.raises(CancellationError, match="halt"):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_sleep_completes_when_not_cancelled():
    await CancellationToken().sleep(0.01)


@pytest.mark.asyncio
async def test_sleep_is_interrupted_by_cancellation():
    root = CancellationToken()
    token = root.child()
    asyncio.get_running_loop().call_later(0.02, root.cancel, "abort")

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(CancellationError, match="abort"):
        await token.sleep(10)
    assert loop.time() - started < 1


@pytest.mark.asyncio
async def test_wait_returns_reason():
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel, "done")
    assert await asyncio.wait_for(token.wait(), timeout=1) == "done"
