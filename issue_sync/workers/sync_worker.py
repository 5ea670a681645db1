"""
Sync Worker
Consumes issue sync jobs and dispatches them to the SyncService.

One job at a time: full syncs of large trackers are memory heavy and may run for hours.
"""

import signal
import sys
import time
from typing import Any, Dict, Optional

from issue_sync.core.cache import close_valkey_connection
from issue_sync.core.exceptions import IssueSyncError, JobValidationError
from issue_sync.core.logging_config import get_logger, get_tenant_logger, setup_logging
from issue_sync.core.tenant_router import TenantClientRegistry, validate_multi_tenant_job_data
from issue_sync.integrations.integration_manager import IntegrationManager
from issue_sync.integrations.issue_cache import IssueCache
from issue_sync.services.sync_service import (
    CREATE_ISSUE_JOB,
    REFRESH_ISSUE_JOB,
    SYNC_ISSUES_JOB,
    SYNC_PROJECT_ISSUES_JOB,
    UPDATE_ISSUE_JOB,
    SyncService,
)
from issue_sync.workers.base_worker import BaseWorker
from issue_sync.workers.queue_manager import SYNC_QUEUE_NAME, Job, QueueManager, SyncQueue, get_sync_queue

logger = get_logger(__name__)

WORKER_CONCURRENCY = 1
LOCK_DURATION_MS = 6 * 60 * 60 * 1000
MAX_STALLED_COUNT = 1
STALLED_INTERVAL_MS = 5 * 60 * 1000


class SyncWorker(BaseWorker):
    """Runs sync-issues, sync-project-issues and refresh-issue jobs."""

    def __init__(
        self,
        sync_service: SyncService,
        tenant_registry: TenantClientRegistry,
        sync_queue: Optional[SyncQueue] = None,
        queue_manager: Optional[QueueManager] = None,
    ):
        super().__init__(SYNC_QUEUE_NAME, queue_manager or (sync_queue.queue_manager if sync_queue else QueueManager()))
        self.sync_service = sync_service
        self.tenant_registry = tenant_registry
        self.sync_queue = sync_queue
        self._last_stalled_check: Optional[float] = None

    def run_periodic_tasks(self):
        """Every STALLED_INTERVAL_MS, requeues jobs left active by a worker that died."""
        if self.sync_queue is None:
            return
        now = time.monotonic()
        if self._last_stalled_check is not None and (now - self._last_stalled_check) * 1000 < STALLED_INTERVAL_MS:
            return
        self._last_stalled_check = now

        counts = self.sync_queue.recover_stalled(LOCK_DURATION_MS, MAX_STALLED_COUNT)
        if counts['requeued'] or counts['failed']:
            logger.warning(f"Stalled jobs: {counts['requeued']} requeued, {counts['failed']} failed")

    async def process_message(self, message: Dict[str, Any]) -> Any:
        job = Job.from_message(message, self.sync_queue)
        if self.sync_queue is not None:
            self.sync_queue.mark_active(job)

        try:
            result = await self.process_job(job)
        except Exception as e:
            if self.sync_queue is not None:
                self.sync_queue.fail(job, e)
            raise
        finally:
            await self.sync_service.drain_background_tasks()

        if self.sync_queue is not None:
            self.sync_queue.complete(job, result)
        return result

    async def process_job(self, job: Job) -> Any:
        data = job.data
        tenant_id = data.get('tenant_id')
        job_logger = get_tenant_logger(__name__, tenant_id)
        job_logger.info(f"Processing sync job {job.id} of type {job.name}")

        validate_multi_tenant_job_data(data)
        db = self.tenant_registry.get_client_for_job(data)

        if job.name == SYNC_ISSUES_JOB:
            result = await self.sync_service.perform_sync(
                data['user_id'], data['integration_id'], data.get('project_id'), data.get('data'),
                job=job, db=db, tenant_id=tenant_id,
            )
            if result.errors:
                job_logger.warning(f"Sync completed with {len(result.errors)} errors: {result.errors}")
            job_logger.info(f"Synced {result.synced} issues successfully")
            return result

        if job.name == SYNC_PROJECT_ISSUES_JOB:
            if not data.get('project_id'):
                raise JobValidationError("Project ID is required for project sync")
            result = await self.sync_service.perform_sync(
                data['user_id'], data['integration_id'], data['project_id'], data.get('data'),
                job=job, db=db, tenant_id=tenant_id,
            )
            if result.errors:
                job_logger.warning(f"Project sync completed with {len(result.errors)} errors: {result.errors}")
            job_logger.info(f"Synced {result.synced} issues from project successfully")
            return result

        if job.name == REFRESH_ISSUE_JOB:
            if not data.get('issue_id'):
                raise JobValidationError("Issue ID is required for issue refresh")
            result = await self.sync_service.perform_issue_refresh(
                data['user_id'], data['integration_id'], data['issue_id'], db=db, tenant_id=tenant_id,
            )
            if not result.success:
                # Raising hands the retry decision to the queue
                raise IssueSyncError(result.error or "Failed to refresh issue")
            job_logger.info(f"Refreshed issue {data['issue_id']} successfully")
            return result

        if job.name == CREATE_ISSUE_JOB:
            if not data.get('data'):
                raise JobValidationError("Issue data is required for issue creation")
            job_logger.info("Issue creation not yet implemented in worker")
            return {'success': False, 'error': "Not implemented"}

        if job.name == UPDATE_ISSUE_JOB:
            if not data.get('issue_id') or not data.get('data'):
                raise JobValidationError("Issue ID and data are required for issue update")
            job_logger.info("Issue update not yet implemented in worker")
            return {'success': False, 'error': "Not implemented"}

        raise JobValidationError(f"Unknown job type: {job.name}")


def build_worker() -> SyncWorker:
    tenant_registry = TenantClientRegistry()
    default_client = tenant_registry.get_default_client()

    integration_manager = IntegrationManager(default_client.SessionLocal)
    sync_queue = get_sync_queue()
    sync_service = SyncService(sync_queue, integration_manager, issue_cache=IssueCache())

    return SyncWorker(sync_service, tenant_registry, sync_queue=sync_queue)


def main():
    setup_logging()

    worker = build_worker()
    if worker.sync_queue is None:
        logger.error("❌ Sync queue unavailable, sync worker cannot start")
        sys.exit(1)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down sync worker...")
        worker.stop()
        worker.tenant_registry.disconnect_all()
        close_valkey_connection()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)

    logger.info(
        f"Sync worker started (concurrency={WORKER_CONCURRENCY}, lock={LOCK_DURATION_MS}ms, "
        f"max_stalled={MAX_STALLED_COUNT}, stalled_interval={STALLED_INTERVAL_MS}ms)"
    )
    worker.start_consuming()


if __name__ == "__main__":
    main()
