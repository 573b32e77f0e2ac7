"""Tests for the task queue and the worker pool."""

import asyncio

import pytest

from container_layer_sizes.core.queue import TaskQueue, TaskWorkerPool
from container_layer_sizes.core.task import TaskState
from container_layer_sizes.exceptions import NotFoundError, ReferenceParseError
from container_layer_sizes.transport.layout import OciLayoutCopier
from tests.helpers import FakePuller


@pytest.fixture
def make_queue(storage_dir, scratch_root):
    def factory(puller=None, task_timeout=30.0):
        return TaskQueue(
            puller or FakePuller(),
            OciLayoutCopier(),
            storage_dir,
            task_timeout=task_timeout,
            scratch_root=scratch_root,
        )

    return factory


def test_add_and_get_task(make_queue):
    queue = make_queue()

    task_id, task = queue.add_task("nginx:alpine")

    assert queue.get_task(task_id) is task
    assert task_id in queue
    assert len(queue) == 1
    assert task.state == TaskState.NEW


def test_task_ids_are_unique(make_queue):
    queue = make_queue()

    ids = {queue.add_task("nginx")[0] for _ in range(10)}

    assert len(ids) == 10


def test_add_invalid_image(make_queue):
    queue = make_queue()

    with pytest.raises(ReferenceParseError):
        queue.add_task("golang:1.16:foobar")
    assert len(queue) == 0


def test_get_unknown_task(make_queue):
    with pytest.raises(NotFoundError):
        make_queue().get_task("does-not-exist")


@pytest.mark.asyncio
async def test_remove_task_cleans_up(make_queue):
    queue = make_queue()
    task_id, task = queue.add_task("nginx")

    await queue.remove_task(task_id)

    assert task_id not in queue
    assert task.cancelled
    assert not task.scratch_dir.exists()
    with pytest.raises(NotFoundError):
        await queue.remove_task(task_id)


@pytest.mark.asyncio
async def test_cleanup_queue_removes_everything(make_queue):
    queue = make_queue()
    tasks = [queue.add_task(f"app{n}")[1] for n in range(3)]

    errors = await queue.cleanup_queue()

    assert errors == []
    assert len(queue) == 0
    assert all(not task.scratch_dir.exists() for task in tasks)


@pytest.mark.asyncio
async def test_worker_pool_processes_tasks(make_queue):
    queue = make_queue()
    pool = TaskWorkerPool(workers=2)
    pool.start()
    try:
        tasks = [queue.add_task("localhost:5000/team/app:1.0")[1] for _ in range(3)]
        for task in tasks:
            await pool.submit(task)
        await asyncio.wait_for(pool.join(), timeout=10)
    finally:
        await pool.stop()

    assert all(task.state == TaskState.FINISHED for task in tasks)
    assert not pool.running
    await queue.cleanup_queue()


@pytest.mark.asyncio
async def test_removing_blocked_task_abandons_it(make_queue):
    puller = FakePuller(block=True)
    queue = make_queue(puller)
    pool = TaskWorkerPool()
    pool.start()
    try:
        task_id, task = queue.add_task("localhost:5000/team/app:1.0")
        await pool.submit(task)
        await asyncio.wait_for(puller.pull_started.wait(), timeout=5)

        await queue.remove_task(task_id)
        await asyncio.wait_for(pool.join(), timeout=5)
    finally:
        await pool.stop()

    assert task.abandoned
    assert task.state == TaskState.PULLING
    assert not task.scratch_dir.exists()


def test_worker_pool_needs_a_worker():
    with pytest.raises(ValueError):
        TaskWorkerPool(workers=0)


@pytest.mark.asyncio
async def test_submit_before_start_fails(make_queue):
    _, task = make_queue().add_task("nginx")

    with pytest.raises(RuntimeError):
        await TaskWorkerPool().submit(task)
