"""Tests for background task handling."""

import asyncio
import logging

import pytest

from lorekeeper.llm import MissingCredentialError, ProviderExhaustedError
from lorekeeper.tasks import BackgroundTasks, advance_turn_counter


async def boom():
    raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_failure_is_logged_not_raised(caplog):
    tasks = BackgroundTasks()

    with caplog.at_level(logging.ERROR, logger="lorekeeper.tasks"):
        tasks.submit("explode", boom())
        await tasks.drain()

    assert len(tasks) == 0
    assert [name for name, _ in tasks.failures] == ["explode"]
    assert "explode" in caplog.text


@pytest.mark.asyncio
async def test_expected_failures_are_quieter(caplog):
    tasks = BackgroundTasks()

    async def no_key():
        raise MissingCredentialError("openrouter")

    async def exhausted():
        raise ProviderExhaustedError("all models failed")

    with caplog.at_level(logging.INFO, logger="lorekeeper.tasks"):
        tasks.submit("no-key", no_key())
        tasks.submit("exhausted", exhausted())
        await tasks.drain()

    levels = {
        r.getMessage().split()[2]: r.levelname
        for r in caplog.records
        if r.name == "lorekeeper.tasks"
    }
    assert levels == {"no-key": "INFO", "exhausted": "WARNING"}


@pytest.mark.asyncio
async def test_drain_waits_for_tasks_submitted_by_tasks():
    tasks = BackgroundTasks()
    done = []

    async def child():
        await asyncio.sleep(0)
        done.append("child")

    async def parent():
        tasks.submit("child", child())
        done.append("parent")

    tasks.submit("parent", parent())
    await tasks.drain()

    assert done == ["parent", "child"]
    assert tasks.failures == []


def test_submit_requires_running_loop():
    tasks = BackgroundTasks()
    coro = boom()
    with pytest.raises(RuntimeError):
        tasks.submit("outside", coro)
    coro.close()


def test_advance_turn_counter(store):
    fired = [advance_turn_counter(store, "turns", 3) for _ in range(7)]
    assert fired == [False, False, True, False, False, True, False]
    assert store.get_setting("turns") == "7"
    assert not advance_turn_counter(store, "other", 0)
