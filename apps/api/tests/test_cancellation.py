from __future__ import annotations

import asyncio

import pytest

from coursepack.cancellation import CancellationToken
from coursepack.errors import MediaTimeout, OperationCancelled


def test_run_returns_result_when_not_cancelled() -> None:
    async def scenario() -> int:
        token = CancellationToken()
        return await token.run(asyncio.sleep(0, result=7))

    assert asyncio.run(scenario()) == 7


def test_child_timeout_does_not_fire_parent_or_siblings() -> None:
    async def scenario():
        token = CancellationToken()
        sibling = token.child(timeout=5)
        async with token.child(timeout=0.01) as child:
            with pytest.raises(MediaTimeout):
                await child.run(asyncio.sleep(1))
        sibling.close()
        return token, child, sibling

    token, child, sibling = asyncio.run(scenario())
    assert child.timed_out
    assert not token.cancelled
    assert not sibling.cancelled


def test_parent_cancel_reaches_children() -> None:
    async def scenario():
        token = CancellationToken()
        async with token.child(timeout=5) as child:
            waiter = asyncio.create_task(child.run(asyncio.sleep(5)))
            await asyncio.sleep(0)
            token.cancel("cancelled by user")
            with pytest.raises(OperationCancelled):
                await waiter
        return child

    child = asyncio.run(scenario())
    assert child.cancelled
    assert not child.timed_out
    assert child.reason == "cancelled by user"


def test_closed_child_is_detached() -> None:
    async def scenario():
        token = CancellationToken()
        async with token.child(timeout=5) as child:
            pass
        token.cancel()
        return child

    assert not asyncio.run(scenario()).cancelled


def test_run_on_cancelled_token_raises_immediately() -> None:
    async def scenario() -> None:
        token = CancellationToken()
        token.cancel("stop")
        await token.run(asyncio.sleep(5))

    with pytest.raises(OperationCancelled):
        asyncio.run(scenario())
