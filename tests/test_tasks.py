import random
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeMessenger, make_user
from taskbridge.assigner import WorkloadAssigner
from taskbridge.tasks import TaskService, format_date


@pytest.mark.asyncio
async def test_create_task_notifies_assignee(db, messenger):
    service = TaskService(db, messenger)
    assignee = make_user(db, "bob")

    task = service.create_task("周报", assignee, reporter_open_id="ou_alice")
    await service.drain()

    assert task.assignee_id == "uid_bob"
    assert task.assignee_open_id == "ou_bob"
    assert task.status == "pending"
    assert len(messenger.texts_to("ou_bob")) == 1
    assert "周报" in messenger.texts_to("ou_bob")[0]


@pytest.mark.asyncio
async def test_create_task_defaults_deadline(db, messenger):
    service = TaskService(db, messenger, default_deadline_days=3)
    before = datetime.now(timezone.utc)

    task = service.create_task("周报", make_user(db, "bob"))
    await service.drain()

    assert before + timedelta(days=3) <= task.deadline <= datetime.now(timezone.utc) + timedelta(days=3)


@pytest.mark.asyncio
async def test_create_task_rejects_bad_priority_without_writing(db, messenger):
    service = TaskService(db, messenger)
    with pytest.raises(ValueError):
        service.create_task("x", make_user(db, "bob"), priority="urgent")
    assert db.get_pending_tasks("uid_bob") == []
    assert messenger.sent == []


@pytest.mark.asyncio
async def test_failed_notification_does_not_roll_back(db):
    failing = FakeMessenger(fail=True)
    service = TaskService(db, failing)

    task = service.create_task("周报", make_user(db, "bob"))
    await service.drain()

    assert db.get_task(task.id).status == "pending"


@pytest.mark.asyncio
async def test_complete_twice_notifies_reporter_once(db, messenger):
    service = TaskService(db, messenger)
    task = service.create_task("周报", make_user(db, "bob"), reporter_open_id="ou_alice")

    first = service.complete_task(task.id, "https://proof", completer_name="Bob")
    second = service.complete_task(task.id, None, completer_name="Bob")
    await service.drain()

    assert first.status == "completed"
    assert second is None
    to_reporter = messenger.texts_to("ou_alice")
    assert len(to_reporter) == 1
    assert "https://proof" in to_reporter[0]


@pytest.mark.asyncio
async def test_complete_without_reporter_sends_nothing_to_reporter(db, messenger):
    service = TaskService(db, messenger)
    task = service.create_task("周报", make_user(db, "bob"))
    await service.drain()
    messenger.sent.clear()

    service.complete_task(task.id)
    await service.drain()

    assert messenger.sent == []


@pytest.mark.asyncio
async def test_create_for_tag_uses_assigner(db, messenger):
    make_user(db, "busy", tags=["ops"])
    make_user(db, "free", tags=["ops"])
    db.create_task("load", "uid_busy", estimated_hours=3)
    service = TaskService(db, messenger, assigner=WorkloadAssigner(db, rng=random.Random(0)))

    task = service.create_for_tag("ops", "巡检")
    await service.drain()

    assert task.assignee_id == "uid_free"
    assert task.target_tag == "ops"
    assert service.create_for_tag("nobody", "x") is None


def test_create_for_tag_from_sync_caller_commits_without_notifying(db, messenger):
    make_user(db, "ops1", tags=["ops"])
    service = TaskService(db, messenger)

    task = service.create_for_tag("ops", "巡检")

    assert db.get_task(task.id).status == "pending"
    assert task.assignee_id == "uid_ops1"
    assert messenger.sent == []


def test_format_date_uses_china_time():
    assert format_date(datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)) == "03月02日"
