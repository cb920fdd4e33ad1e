"""Unit tests for the Celery worker tasks."""

import asyncio
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest

from cadence.core.exceptions import PersistenceError
from cadence.scheduling import ActionType, ScheduledAction
from cadence.scheduling.queue import RUN_ACTION_TASK
from cadence.scheduling.scheduler import CycleResult
from cadence.worker import tasks
from cadence.worker.celery_app import celery_app

RETRY_DELAY = tasks.get_settings().DECISION_FAILURE_RETRY_DELAY


@pytest.fixture
def worker_loop(monkeypatch):
    loop = asyncio.new_event_loop()
    monkeypatch.setattr(tasks, "_loop", loop)
    yield loop
    loop.close()


@pytest.fixture
def scheduler(monkeypatch):
    """Mock scheduler installed as the worker's runtime."""
    scheduler = Mock()
    scheduler.handle = AsyncMock(return_value=CycleResult.WAITING)
    scheduler.tick = AsyncMock(return_value=3)
    scheduler.kick = AsyncMock()
    monkeypatch.setattr(tasks, "_runtime", Mock(scheduler=scheduler))
    return scheduler


def test_run_action_is_registered_under_queue_name():
    assert tasks.run_action.name == RUN_ACTION_TASK
    assert RUN_ACTION_TASK in celery_app.tasks


def test_beat_runs_periodic_tick():
    entry = celery_app.conf.beat_schedule["periodic-tick"]
    assert entry["task"] == tasks.periodic_tick.name


def test_late_acks_enabled():
    assert celery_app.conf.task_acks_late
    assert celery_app.conf.task_reject_on_worker_lost


def test_run_action_hands_action_to_scheduler(scheduler, worker_loop):
    conversation_id = uuid4()

    result = tasks.run_action(ScheduledAction.decide(conversation_id, delay=5).to_message())

    assert result == "waiting"
    action = scheduler.handle.await_args.args[0]
    assert action.action is ActionType.DECIDE
    assert action.payload == {"conversation_id": str(conversation_id)}


def test_storage_failure_is_retried(scheduler, worker_loop):
    scheduler.handle.side_effect = PersistenceError("insert", "disk I/O error")

    # Called directly, Celery re-raises the retried exception
    with pytest.raises(PersistenceError):
        tasks.run_action(ScheduledAction.decide(uuid4()).to_message())
    scheduler.kick.assert_not_awaited()


def test_decision_out_of_retries_restarts_cycle(scheduler, worker_loop, monkeypatch):
    monkeypatch.setattr(tasks.run_action, "max_retries", 0)
    conversation_id = uuid4()
    scheduler.handle.side_effect = PersistenceError("insert", "disk I/O error")

    with pytest.raises(PersistenceError):
        tasks.run_action(ScheduledAction.decide(conversation_id).to_message())

    scheduler.kick.assert_awaited_once_with(conversation_id, RETRY_DELAY)


def test_unexpected_decision_error_restarts_cycle(scheduler, worker_loop):
    conversation_id = uuid4()
    scheduler.handle.side_effect = ValueError("bad payload")

    with pytest.raises(ValueError):
        tasks.run_action(ScheduledAction.decide(conversation_id).to_message())

    scheduler.kick.assert_awaited_once_with(conversation_id, RETRY_DELAY)


@pytest.mark.parametrize("action_type", [ActionType.GENERATE, ActionType.FRAGMENT])
def test_failed_step_queues_decision_instead_of_replay(scheduler, worker_loop, action_type):
    conversation_id = uuid4()
    scheduler.handle.side_effect = PersistenceError("insert", "disk I/O error")
    message = ScheduledAction.after(
        action_type, {"conversation_id": str(conversation_id), "lock_token": "stale"}
    ).to_message()

    with pytest.raises(PersistenceError):
        tasks.run_action(message)

    # Replaying the step would reuse its lock token
    scheduler.handle.assert_awaited_once()
    scheduler.kick.assert_awaited_once_with(conversation_id, RETRY_DELAY)


def test_non_conversation_failure_is_not_rescheduled(scheduler, worker_loop):
    scheduler.handle.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        tasks.run_action(ScheduledAction.for_persona(ActionType.MAINTAIN_MEMORY, uuid4()).to_message())

    scheduler.kick.assert_not_awaited()


def test_periodic_tick(scheduler, worker_loop):
    assert tasks.periodic_tick() == 3
    scheduler.tick.assert_awaited_once()
