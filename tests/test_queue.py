from datetime import datetime, timedelta, timezone

import pytest

from tgtask.queue import QueueEmptyError, QueueFullError, TaskQueue
from tgtask.storage import PREFIX_COMPLETE, PREFIX_PROCESSING, PREFIX_SCHEDULED, Storage, task_key
from tgtask.task import CreatedBy, DatedState, State, Task

BASE = datetime(2020, 6, 9, tzinfo=timezone.utc)


def convert_task(data):
    return Task.from_json(data)


@pytest.fixture
def storage():
    with Storage.in_memory() as store:
        yield store


def scheduled(at=BASE):
    return [DatedState(at, State.SCHEDULED)]


def test_queue_is_persistent(storage):
    queue = TaskQueue(storage, 1, convert_task)
    task = Task(id="bt4brhjpc98qra498sg0")
    queue.push(task)
    stored = storage.fetch(PREFIX_SCHEDULED, task.id)
    assert stored.id == task.id


def test_queue_reloads(storage):
    task_id = "bt4brhjpc98qra498sg0"
    first = TaskQueue(storage, 1, convert_task)
    first.push(Task(id=task_id))
    second = TaskQueue(storage, 1, convert_task)
    assert len(second) == 1
    assert second.pop().id == task_id


def test_queue_removes_tasks_per_branch(storage):
    queue = TaskQueue(storage, 100, convert_task)
    id1 = "ab4brhjpc98qra498sg0"
    branch = "test_branch"
    repo = "test_repo"
    queue.push(Task(id=id1, created_by=CreatedBy(branch=branch, repo=repo), states=scheduled(), priority=200))

    id2 = "cd4brhjpc98qra498sg1"
    repo2 = "another_repo"
    queue.push(Task(id=id2, created_by=CreatedBy(branch=branch, repo=repo2), states=scheduled(), priority=100))

    id3 = "cc4brhjpc98qra498sg2"
    branch2 = "another_branch"
    queue.push(Task(id=id3, created_by=CreatedBy(branch=branch2, repo=repo2), states=scheduled(), priority=20))

    id4 = "hg4brhjpc98qra566sg3"
    queue.push_unique_by_branch(
        Task(id=id4, created_by=CreatedBy(branch=branch, repo=repo), states=scheduled(), priority=3)
    )

    assert len(queue) == 3
    assert queue.pop().id == id2
    assert queue.pop().id == id3
    assert queue.pop().id == id4

    assert storage.get(id1).state().state == State.CANCELED
    assert storage.has_key(task_key(PREFIX_COMPLETE, id1))


def test_queue_does_not_remove_tasks_without_branch_or_repo(storage):
    queue = TaskQueue(storage, 100, convert_task)
    queue.push(Task(id="bt4brhjpc98qra498sg0", states=scheduled()))
    queue.push_unique_by_branch(Task(id="bt3brhjpc98qra498sg1", states=scheduled()))
    assert len(queue) == 2


def test_queue_sorts_priority_and_time(storage):
    queue = TaskQueue(storage, 100, convert_task)
    counter = 0
    for _batch in range(2):
        for priority in range(11):
            queue.push(
                Task(
                    id=f"brfdnkrpc98qs6rq{counter:02d}b0",
                    priority=priority,
                    states=scheduled(BASE + timedelta(seconds=counter)),
                )
            )
            counter += 1

    head = queue.pop()
    popped = 1
    while len(queue) > 0:
        following = queue.pop()
        popped += 1
        if head.priority != following.priority:
            assert head.priority > following.priority
        else:
            assert head.created() < following.created()
        head = following
    assert popped == 22


def test_push_beyond_max_raises(storage):
    queue = TaskQueue(storage, 1, convert_task)
    queue.push(Task(id="bt4brhjpc98qra498sg0", states=scheduled()))
    with pytest.raises(QueueFullError):
        queue.push(Task(id="brfdnkrpc98qs6rq33b0", states=scheduled()))
    assert len(queue) == 1


def test_pop_from_empty_queue_raises(storage):
    queue = TaskQueue(storage, 5, convert_task)
    with pytest.raises(QueueEmptyError):
        queue.pop()


def test_pop_moves_task_to_processing(storage):
    queue = TaskQueue(storage, 5)
    queue.push(Task(id="bt4brhjpc98qra498sg0", states=scheduled()))
    task = queue.pop()
    assert storage.has_key(task_key(PREFIX_PROCESSING, task.id))
    assert not storage.has_key(task_key(PREFIX_SCHEDULED, task.id))


def test_processing_tasks_are_reloaded(storage):
    first = TaskQueue(storage, 5)
    first.push(Task(id="bt4brhjpc98qra498sg0", states=scheduled()))
    first.pop()
    second = TaskQueue(storage, 5)
    assert len(second) == 1


def test_canceled_tasks_are_not_reloaded(storage):
    queue = TaskQueue(storage, 5)
    by = CreatedBy(repo="r", branch="b")
    queue.push(Task(id="ab4brhjpc98qra498sg0", created_by=by, states=scheduled()))
    queue.push_unique_by_branch(Task(id="hg4brhjpc98qra566sg3", created_by=by, states=scheduled()))
    reloaded = TaskQueue(storage, 5)
    assert len(reloaded) == 1
    assert reloaded.pop().id == "hg4brhjpc98qra566sg3"