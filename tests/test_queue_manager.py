"""
Unit tests for the sync queue and job state tracking
"""

import json
from unittest.mock import Mock

import pytest

from issue_sync.core.config import reset_settings
from issue_sync.services.sync_service import SyncResult
from issue_sync.workers.queue_manager import (
    DEFAULT_JOB_OPTIONS,
    RETRY_QUEUE_NAME,
    STALLED_FAILED_REASON,
    SYNC_QUEUE_NAME,
    Job,
    SyncQueue,
    compute_backoff_ms,
    get_sync_queue,
)


def stored_state(fake_redis, job_id):
    return json.loads(fake_redis.data[f"issue-sync:job:{job_id}"])


def backdate(fake_redis, job_id, **changes):
    state = stored_state(fake_redis, job_id)
    state.update(changes, updated_at="2020-01-01T00:00:00+00:00")
    fake_redis.data[f"issue-sync:job:{job_id}"] = json.dumps(state)


class TestBackoff:
    """Test retry delay computation"""

    def test_exponential(self):
        options = {'backoff': {'type': 'exponential', 'delay': 5000}}

        assert [compute_backoff_ms(options, n) for n in (1, 2, 3)] == [5000, 10000, 20000]

    def test_fixed(self):
        options = {'backoff': {'type': 'fixed', 'delay': 250}}

        assert compute_backoff_ms(options, 3) == 250

    def test_no_backoff(self):
        assert compute_backoff_ms({}, 2) == 0


class TestJob:
    """Test job message conversion"""

    def test_from_message_applies_defaults(self):
        job = Job.from_message({'id': 'j1', 'name': 'sync-issues', 'data': {'user_id': 'u'}})

        assert job.opts == DEFAULT_JOB_OPTIONS
        assert job.attempts_made == 0
        assert job.to_message() == {
            'id': 'j1',
            'name': 'sync-issues',
            'data': {'user_id': 'u'},
            'opts': DEFAULT_JOB_OPTIONS,
            'attempts_made': 0,
        }

    def test_from_message_keeps_overrides(self):
        job = Job.from_message({'id': 'j1', 'name': 'refresh-issue', 'opts': {'attempts': 5}, 'attempts_made': 2})

        assert job.opts['attempts'] == 5
        assert job.opts['backoff'] == DEFAULT_JOB_OPTIONS['backoff']
        assert job.attempts_made == 2

    @pytest.mark.asyncio
    async def test_update_progress_without_queue(self):
        await Job('j1', 'sync-issues', {}, {}).update_progress({'current': 1})


class TestSyncQueue:
    """Test job publishing and state transitions"""

    def setup_method(self):
        self.queue_manager = Mock()
        self.queue_manager.publish_message.return_value = True

    def test_add_saves_waiting_state_and_publishes(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)

        job = queue.add('sync-issues', {'user_id': 'u', 'integration_id': 1})

        state = stored_state(fake_redis, job.id)
        assert state['status'] == 'waiting'
        assert state['attempts_made'] == 0
        assert state['data'] == {'user_id': 'u', 'integration_id': 1}
        queue_name, message = self.queue_manager.publish_message.call_args.args
        assert queue_name == SYNC_QUEUE_NAME
        assert message['id'] == job.id
        assert message['opts']['attempts'] == 3

    def test_add_merges_options(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)

        job = queue.add('refresh-issue', {}, {'attempts': 1})

        assert job.opts['attempts'] == 1
        assert job.opts['backoff'] == {'type': 'exponential', 'delay': 5000}

    def test_add_returns_none_when_publish_fails(self, fake_redis):
        self.queue_manager.publish_message.return_value = False
        queue = SyncQueue(self.queue_manager, fake_redis)

        assert queue.add('sync-issues', {}) is None

        [key] = fake_redis.data
        assert json.loads(fake_redis.data[key])['status'] == 'failed'

    def test_add_without_state_store(self):
        queue = SyncQueue(self.queue_manager, None)

        job = queue.add('sync-issues', {})

        assert job is not None
        assert queue.get_job(job.id) is None

    @pytest.mark.asyncio
    async def test_progress_is_written_to_state(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = queue.add('sync-issues', {})

        await job.update_progress({'current': 2, 'total': 4, 'percentage': 50})

        assert queue.get_job(job.id)['progress'] == {'current': 2, 'total': 4, 'percentage': 50}

    def test_mark_active(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = queue.add('sync-issues', {})

        queue.mark_active(job)

        assert queue.get_job(job.id)['status'] == 'active'

    def test_complete_stores_result(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = queue.add('sync-issues', {})

        queue.complete(job, SyncResult(synced=3, errors=[]))

        state = queue.get_job(job.id)
        assert state['status'] == 'completed'
        assert state['result'] == {'synced': 3, 'errors': []}
        assert 'finished_at' in state

    def test_complete_removes_state(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = queue.add('sync-issues', {}, {'remove_on_complete': True})

        queue.complete(job, None)

        assert queue.get_job(job.id) is None

    def test_fail_schedules_retry_with_backoff(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = queue.add('sync-issues', {})

        assert queue.fail(job, RuntimeError("provider down")) is True

        retry_call = self.queue_manager.publish_message.call_args
        assert retry_call.args[0] == RETRY_QUEUE_NAME
        assert retry_call.args[1]['attempts_made'] == 1
        assert retry_call.kwargs['delay_ms'] == 5000
        state = queue.get_job(job.id)
        assert state['status'] == 'delayed'
        assert state['failed_reason'] == "provider down"

    def test_fail_after_last_attempt(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = queue.add('sync-issues', {})

        assert queue.fail(job, RuntimeError("1")) is True
        assert queue.fail(job, RuntimeError("2")) is True
        assert self.queue_manager.publish_message.call_args.kwargs['delay_ms'] == 10000
        assert queue.fail(job, RuntimeError("3")) is False

        state = queue.get_job(job.id)
        assert state['status'] == 'failed'
        assert state['attempts_made'] == 3
        assert state['failed_reason'] == "3"

    def test_fail_when_retry_publish_fails(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = queue.add('sync-issues', {})
        self.queue_manager.publish_message.return_value = False

        assert queue.fail(job, RuntimeError("boom")) is False
        assert queue.get_job(job.id)['status'] == 'failed'

    def test_fail_removes_state(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = queue.add('sync-issues', {}, {'attempts': 1, 'remove_on_fail': True})

        assert queue.fail(job, RuntimeError("boom")) is False
        assert queue.get_job(job.id) is None


class TestRecoverStalled:
    """Test requeueing jobs left active by a dead worker"""

    def setup_method(self):
        self.queue_manager = Mock()
        self.queue_manager.publish_message.return_value = True

    def _active_job(self, queue, fake_redis, **changes):
        job = queue.add('sync-issues', {'user_id': 'u', 'integration_id': 1})
        queue.mark_active(job)
        backdate(fake_redis, job.id, **changes)
        return job

    def test_stalled_job_is_requeued_once(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = self._active_job(queue, fake_redis)

        assert queue.recover_stalled(60_000, 1) == {'requeued': 1, 'failed': 0}

        queue_name, message = self.queue_manager.publish_message.call_args.args
        assert queue_name == SYNC_QUEUE_NAME
        assert message['id'] == job.id
        assert message['data'] == {'user_id': 'u', 'integration_id': 1}
        state = queue.get_job(job.id)
        assert state['status'] == 'waiting'
        assert state['stalled_count'] == 1

    def test_second_stall_fails_job(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        job = self._active_job(queue, fake_redis, stalled_count=1)
        self.queue_manager.publish_message.reset_mock()

        assert queue.recover_stalled(60_000, 1) == {'requeued': 0, 'failed': 1}

        self.queue_manager.publish_message.assert_not_called()
        state = queue.get_job(job.id)
        assert state['status'] == 'failed'
        assert state['failed_reason'] == STALLED_FAILED_REASON

    def test_recent_and_finished_jobs_are_left_alone(self, fake_redis):
        queue = SyncQueue(self.queue_manager, fake_redis)
        running = queue.add('sync-issues', {})
        queue.mark_active(running)
        done = self._active_job(queue, fake_redis)
        queue.complete(Job.from_message(queue.get_job(done.id)), None)

        assert queue.recover_stalled(60_000, 1) == {'requeued': 0, 'failed': 0}
        assert queue.get_job(running.id)['status'] == 'active'

    def test_without_state_store(self):
        assert SyncQueue(self.queue_manager, None).recover_stalled(60_000, 1) == {'requeued': 0, 'failed': 0}


class TestGetSyncQueue:
    """Test queue construction against the environment"""

    @pytest.fixture(autouse=True)
    def fresh_settings(self):
        reset_settings()
        yield
        reset_settings()

    def test_disabled_by_skip_flag(self, monkeypatch):
        monkeypatch.setenv("SKIP_VALKEY_CONNECTION", "true")
        queue_manager = Mock()

        assert get_sync_queue(queue_manager) is None
        queue_manager.setup_queues.assert_not_called()

    def test_builds_queue(self, monkeypatch, fake_redis):
        monkeypatch.setenv("SKIP_VALKEY_CONNECTION", "false")
        monkeypatch.setattr("issue_sync.workers.queue_manager.get_valkey_connection", lambda: fake_redis)
        queue_manager = Mock()

        queue = get_sync_queue(queue_manager)

        assert queue.state_store is fake_redis
        queue_manager.setup_queues.assert_called_once()

    def test_topology_failure(self, monkeypatch, fake_redis):
        monkeypatch.setenv("SKIP_VALKEY_CONNECTION", "false")
        monkeypatch.setattr("issue_sync.workers.queue_manager.get_valkey_connection", lambda: fake_redis)
        queue_manager = Mock()
        queue_manager.setup_queues.side_effect = RuntimeError("broker down")

        assert get_sync_queue(queue_manager) is None
