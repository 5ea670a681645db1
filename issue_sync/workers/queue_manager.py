"""
RabbitMQ queue management for issue sync jobs.

Queue topology:
- issue-sync: durable work queue consumed by the sync worker
- issue-sync.retry: holding queue; each message carries its own TTL (the backoff delay)
  and dead-letters back to issue-sync when it expires

Job state (status, attempts, progress, result) lives in the key-value store under
issue-sync:job:{id} so request handlers can poll it.

Messages are acknowledged on receipt. A job whose worker dies mid-run stays "active"
in its state record; recover_stalled() puts such jobs back on the queue.
"""

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pika
import redis
from pydantic import BaseModel

from issue_sync.core.cache import get_valkey_connection
from issue_sync.core.config import get_settings
from issue_sync.core.logging_config import get_logger

logger = get_logger(__name__)

SYNC_QUEUE_NAME = 'issue-sync'
RETRY_QUEUE_NAME = 'issue-sync.retry'
JOB_KEY_PREFIX = 'issue-sync:job:'
STALLED_FAILED_REASON = 'job stalled more than allowable limit'

DEFAULT_JOB_OPTIONS = {
    'attempts': 3,
    'backoff': {'type': 'exponential', 'delay': 5000},
    'remove_on_complete': False,
    'remove_on_fail': False,
}


class QueueManager:
    """Manages RabbitMQ connections, the sync queue topology and message publishing."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        vhost: Optional[str] = None
    ):
        settings = get_settings()
        self.host: str = host or settings.RABBITMQ_HOST
        self.port: int = port if port is not None else settings.RABBITMQ_PORT
        self.username: str = username or settings.RABBITMQ_USER
        self.password: str = password or settings.RABBITMQ_PASSWORD
        self.vhost: str = vhost or settings.RABBITMQ_VHOST

        logger.info(f"QueueManager initialized: {self.username}@{self.host}:{self.port}{self.vhost}")

    def _get_connection(self) -> pika.BlockingConnection:
        credentials = pika.PlainCredentials(self.username, self.password)
        parameters = pika.ConnectionParameters(
            host=self.host,
            port=self.port,
            virtual_host=self.vhost,
            credentials=credentials,
            heartbeat=600,
            blocked_connection_timeout=300
        )

        try:
            connection = pika.BlockingConnection(parameters)
            logger.debug(f"RabbitMQ connection established: {self.host}:{self.port}")
            return connection
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    @contextmanager
    def get_channel(self):
        """
        Context manager for a RabbitMQ channel; closes the connection when done.

        Usage:
            with queue_manager.get_channel() as channel:
                channel.basic_publish(...)
        """
        connection = None
        channel = None
        try:
            connection = self._get_connection()
            channel = connection.channel()
            yield channel
        finally:
            if channel and channel.is_open:
                channel.close()
            if connection and connection.is_open:
                connection.close()

    def setup_queues(self):
        """Declares the sync queue and its dead-lettering retry queue."""
        with self.get_channel() as channel:
            channel.queue_declare(queue=SYNC_QUEUE_NAME, durable=True)
            channel.queue_declare(
                queue=RETRY_QUEUE_NAME,
                durable=True,
                arguments={
                    'x-dead-letter-exchange': '',
                    'x-dead-letter-routing-key': SYNC_QUEUE_NAME,
                }
            )

        logger.info(f"✅ Queue topology ready: {SYNC_QUEUE_NAME}, {RETRY_QUEUE_NAME}")

    def publish_message(self, queue_name: str, message: Dict[str, Any], delay_ms: Optional[int] = None) -> bool:
        """
        Publishes a persistent JSON message.

        With delay_ms the message gets a per-message TTL; use it on the retry queue.
        """
        try:
            with self.get_channel() as channel:
                channel.basic_publish(
                    exchange='',
                    routing_key=queue_name,
                    body=json.dumps(message, default=str),
                    properties=pika.BasicProperties(
                        delivery_mode=2,
                        content_type='application/json',
                        expiration=str(delay_ms) if delay_ms is not None else None
                    )
                )
            logger.debug(f"Message published to {queue_name}: {message.get('name')} {message.get('id')}")
            return True
        except Exception as e:
            logger.error(f"Failed to publish message to {queue_name}: {e}")
            return False

    def get_single_message(self, queue_name: str, timeout: float = 1.0) -> Optional[Dict[str, Any]]:
        """Returns one acknowledged message from the queue, or None."""
        try:
            with self.get_channel() as channel:
                method_frame, header_frame, body = channel.basic_get(queue=queue_name, auto_ack=False)

                if not method_frame:
                    return None

                try:
                    message = json.loads(body)
                    channel.basic_ack(delivery_tag=method_frame.delivery_tag)
                    return message
                except Exception as e:
                    logger.error(f"Error parsing message: {e}")
                    channel.basic_nack(delivery_tag=method_frame.delivery_tag, requeue=False)
                    return None

        except Exception as e:
            logger.error(f"Error getting message from {queue_name}: {e}")
            return None


def compute_backoff_ms(options: Dict[str, Any], attempts_made: int) -> int:
    """Delay before the next attempt, given the number of attempts already made."""
    backoff = options.get('backoff') or {}
    delay = int(backoff.get('delay', 0))
    if backoff.get('type') == 'exponential':
        return delay * (2 ** max(attempts_made - 1, 0))
    return delay


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class Job:
    """A dequeued job: payload plus a handle to report progress."""

    def __init__(
        self,
        id: str,
        name: str,
        data: Dict[str, Any],
        opts: Dict[str, Any],
        attempts_made: int = 0,
        queue: Optional['SyncQueue'] = None
    ):
        self.id = id
        self.name = name
        self.data = data
        self.opts = opts
        self.attempts_made = attempts_made
        self.queue = queue

    @classmethod
    def from_message(cls, message: Dict[str, Any], queue: Optional['SyncQueue'] = None) -> 'Job':
        return cls(
            id=message['id'],
            name=message['name'],
            data=message.get('data') or {},
            opts={**DEFAULT_JOB_OPTIONS, **(message.get('opts') or {})},
            attempts_made=message.get('attempts_made', 0),
            queue=queue,
        )

    def to_message(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'data': self.data,
            'opts': self.opts,
            'attempts_made': self.attempts_made,
        }

    async def update_progress(self, progress: Dict[str, Any]):
        if self.queue is not None:
            self.queue.update_state(self.id, progress=progress)


class SyncQueue:
    """Durable job queue for sync jobs: RabbitMQ transport plus key-value job state."""

    def __init__(self, queue_manager: QueueManager, state_store: Optional[redis.Redis]):
        self.queue_manager = queue_manager
        self.state_store = state_store
        self.name = SYNC_QUEUE_NAME

    @staticmethod
    def _state_key(job_id: str) -> str:
        return f"{JOB_KEY_PREFIX}{job_id}"

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        if self.state_store is None:
            return None
        try:
            raw = self.state_store.get(self._state_key(job_id))
            return json.loads(raw) if raw else None
        except (redis.RedisError, ValueError) as e:
            logger.error(f"Error reading state for job {job_id}: {e}")
            return None

    def _save_state(self, job_id: str, state: Dict[str, Any]):
        if self.state_store is None:
            return
        try:
            self.state_store.set(self._state_key(job_id), json.dumps(state, default=str))
        except redis.RedisError as e:
            logger.error(f"Error writing state for job {job_id}: {e}")

    def _delete_state(self, job_id: str):
        if self.state_store is None:
            return
        try:
            self.state_store.delete(self._state_key(job_id))
        except redis.RedisError as e:
            logger.error(f"Error deleting state for job {job_id}: {e}")

    def update_state(self, job_id: str, **changes):
        state = self.get_job(job_id) or {'id': job_id}
        state.update(changes)
        state['updated_at'] = _timestamp()
        self._save_state(job_id, state)

    def add(self, name: str, data: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Optional[Job]:
        """Registers the job as waiting and publishes it. None when publishing fails."""
        job = Job(
            id=str(uuid.uuid4()),
            name=name,
            data=data,
            opts={**DEFAULT_JOB_OPTIONS, **(options or {})},
            queue=self,
        )

        self._save_state(job.id, {
            'id': job.id,
            'name': name,
            'data': data,
            'opts': job.opts,
            'status': 'waiting',
            'attempts_made': 0,
            'progress': None,
            'created_at': _timestamp(),
        })

        if not self.queue_manager.publish_message(self.name, job.to_message()):
            self.update_state(job.id, status='failed', failed_reason='Failed to publish job')
            return None

        return job

    def mark_active(self, job: Job):
        # Carries the payload so recover_stalled can republish the job
        self.update_state(
            job.id, status='active', name=job.name, data=job.data, opts=job.opts, attempts_made=job.attempts_made
        )

    def complete(self, job: Job, result: Any = None):
        if isinstance(result, BaseModel):
            result = result.model_dump(mode='json')

        if job.opts.get('remove_on_complete'):
            self._delete_state(job.id)
        else:
            self.update_state(job.id, status='completed', result=result, finished_at=_timestamp())

    def fail(self, job: Job, error: Exception) -> bool:
        """
        Records a failed attempt. Returns True when the job was scheduled for retry.

        Retries go through the retry queue with the backoff delay as message TTL.
        """
        job.attempts_made += 1
        attempts = int(job.opts.get('attempts', 1))

        if job.attempts_made < attempts:
            delay_ms = compute_backoff_ms(job.opts, job.attempts_made)
            self.update_state(job.id, status='delayed', attempts_made=job.attempts_made, failed_reason=str(error))
            if self.queue_manager.publish_message(RETRY_QUEUE_NAME, job.to_message(), delay_ms=delay_ms):
                logger.warning(
                    f"Job {job.id} ({job.name}) failed attempt {job.attempts_made}/{attempts}, retrying in {delay_ms}ms: {error}"
                )
                return True

        if job.opts.get('remove_on_fail'):
            self._delete_state(job.id)
        else:
            self.update_state(
                job.id, status='failed', attempts_made=job.attempts_made,
                failed_reason=str(error), finished_at=_timestamp()
            )
        logger.error(f"❌ Job {job.id} ({job.name}) failed after {job.attempts_made} attempts: {error}")
        return False

    def recover_stalled(self, lock_duration_ms: int, max_stalled_count: int) -> Dict[str, int]:
        """
        Finds active jobs whose state was not touched within lock_duration_ms.

        Each is published again, up to max_stalled_count times per job; after that
        it is failed with STALLED_FAILED_REASON.
        """
        counts = {'requeued': 0, 'failed': 0}
        if self.state_store is None:
            return counts

        cutoff = datetime.now(timezone.utc) - timedelta(milliseconds=lock_duration_ms)
        try:
            keys = list(self.state_store.scan_iter(match=f"{JOB_KEY_PREFIX}*"))
        except redis.RedisError as e:
            logger.error(f"Error scanning job states for stalled jobs: {e}")
            return counts

        for key in keys:
            job_id = key[len(JOB_KEY_PREFIX):]
            state = self.get_job(job_id)
            if not state or state.get('status') != 'active':
                continue
            touched = state.get('updated_at')
            if touched and datetime.fromisoformat(touched) > cutoff:
                continue

            stalled_count = int(state.get('stalled_count', 0)) + 1
            if stalled_count > max_stalled_count:
                self.update_state(
                    job_id, status='failed', stalled_count=stalled_count,
                    failed_reason=STALLED_FAILED_REASON, finished_at=_timestamp()
                )
                logger.error(f"❌ Job {job_id} ({state.get('name')}) {STALLED_FAILED_REASON}")
                counts['failed'] += 1
                continue

            job = Job.from_message(state, self)
            self.update_state(job_id, status='waiting', stalled_count=stalled_count)
            if self.queue_manager.publish_message(self.name, job.to_message()):
                logger.warning(f"Job {job_id} ({job.name}) stalled, moved back to waiting")
                counts['requeued'] += 1
            else:
                self.update_state(job_id, status='failed', failed_reason='Failed to publish stalled job')
                counts['failed'] += 1

        return counts


def get_sync_queue(queue_manager: Optional[QueueManager] = None) -> Optional[SyncQueue]:
    """
    Builds the sync queue, or returns None when it cannot be used.

    None when SKIP_VALKEY_CONNECTION is set, when the key-value store is unreachable,
    or when the RabbitMQ topology cannot be declared.
    """
    if get_settings().SKIP_VALKEY_CONNECTION:
        logger.info("SKIP_VALKEY_CONNECTION set - sync queue disabled")
        return None

    state_store = get_valkey_connection()
    if state_store is None:
        logger.warning("Key-value store unavailable - sync queue disabled")
        return None

    queue_manager = queue_manager or QueueManager()
    try:
        queue_manager.setup_queues()
    except Exception as e:
        logger.error(f"❌ Failed to set up sync queue topology: {e}")
        return None

    return SyncQueue(queue_manager, state_store)
