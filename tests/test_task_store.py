from datetime import datetime, timedelta, timezone

import pytest

from blockreceipt.models.task import ReceiptPayload, Task, TaskStatus, TaskType
from blockreceipt.queues.task_store import MemoryTaskStore, create_store

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_task(wallet="0xAA", receipt="r1", offset=0, **kwargs):
    ts = T0 + timedelta(seconds=offset)
    return Task(type=kwargs.pop("type", TaskType.NFT_PURCHASE), data=ReceiptPayload(),
                wallet_address=wallet, receipt_id=receipt, created_at=ts, updated_at=ts, **kwargs)


def test_get_by_id_and_overwrite():
    store = MemoryTaskStore()
    task = make_task()
    store.put(task)
    assert store.get_by_id(task.id) == task

    processing = task.evolve(status=TaskStatus.PROCESSING)
    store.put(processing)
    assert store.get_by_id(task.id).status == TaskStatus.PROCESSING
    assert len(store) == 1


def test_missing_lookups():
    store = MemoryTaskStore()
    assert store.get_by_id("nope") is None
    assert store.get_by_wallet("0xAA") == []
    assert store.get_latest_by_receipt("r1") is None


def test_wallet_tasks_sorted_newest_first():
    store = MemoryTaskStore()
    old = make_task(offset=0)
    new = make_task(offset=10)
    middle = make_task(offset=5)
    other = make_task(wallet="0xBB", offset=20)
    for t in (old, new, middle, other):
        store.put(t)

    assert [t.id for t in store.get_by_wallet("0xAA")] == [new.id, middle.id, old.id]
    assert [t.id for t in store.get_by_wallet("0xBB")] == [other.id]


def test_equal_timestamps_prefer_later_insertion():
    store = MemoryTaskStore()
    first = make_task(offset=0)
    second = make_task(offset=0, type=TaskType.FALLBACK_MINT)
    store.put(first)
    store.put(second)

    assert store.get_latest_by_receipt("r1").id == second.id
    assert [t.id for t in store.get_by_wallet("0xAA")] == [second.id, first.id]


def test_latest_by_receipt_ignores_status_updates():
    store = MemoryTaskStore()
    first = make_task(offset=0)
    second = make_task(offset=1, type=TaskType.FALLBACK_MINT)
    store.put(first)
    store.put(second)
    # 旧任务后更新不影响“最新”判定
    store.put(first.evolve(status=TaskStatus.PROCESSING, updated_at=T0 + timedelta(seconds=30)))

    assert store.get_latest_by_receipt("r1").id == second.id


def test_retention_prunes_only_old_terminal_tasks():
    store = MemoryTaskStore(retention_seconds=60)
    done = make_task(receipt="old").evolve(status=TaskStatus.PROCESSING).evolve(
        status=TaskStatus.FAILED, error="boom")
    stuck = make_task(receipt="pending")
    store.put(done)
    store.put(stuck)

    fresh = make_task(receipt="fresh", offset=120)
    store.put(fresh)

    assert store.get_by_id(done.id) is None
    assert store.get_by_id(stuck.id) is not None
    assert store.get_by_id(fresh.id) is not None


def test_retention_disabled_keeps_everything():
    store = MemoryTaskStore()
    done = make_task().evolve(status=TaskStatus.COMPLETED)
    store.put(done)
    store.put(make_task(offset=10 ** 6))
    assert store.get_by_id(done.id) is not None


def test_create_store_defaults_to_memory(mocker):
    mocker.patch("blockreceipt.queues.task_store.config.get", return_value="memory")
    assert isinstance(create_store(), MemoryTaskStore)


def test_create_store_falls_back_when_redis_unavailable(mocker):
    mocker.patch("blockreceipt.queues.task_store.config.get", return_value="redis")
    mocker.patch("blockreceipt.queues.backends.redis_store.RedisTaskStore.__init__",
                 side_effect=ConnectionError("redis down"))
    assert isinstance(create_store(), MemoryTaskStore)


@pytest.mark.parametrize("status", [TaskStatus.PENDING, TaskStatus.PROCESSING, TaskStatus.COMPLETED])
def test_non_failed_tasks_never_carry_error(status):
    with pytest.raises(ValueError):
        make_task(status=status, error="nope")
