"""
Sync Service
Enqueues sync jobs and runs the reconciliation between external trackers and local issues.

Enqueue helpers are called from request handlers and return a job id, or None when the
queue is unavailable. The perform_* methods run inside the sync worker.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from issue_sync.core.access_policy import AccessPolicy, PermissiveAccessPolicy
from issue_sync.core.database import DatabaseClient, get_default_client
from issue_sync.core.exceptions import AuthenticationError, IssueNotFoundError, IssueSyncError, NotSupportedError
from issue_sync.core.logging_config import LoggerMixin
from issue_sync.core.tenant_router import get_current_tenant_id
from issue_sync.integrations.adapters.types import PROVIDER_GITHUB, IssueData
from issue_sync.integrations.integration_manager import IntegrationManager
from issue_sync.integrations.issue_cache import IssueCache
from issue_sync.models.unified_models import Integration, Issue, Role, User, UserIntegrationAuth, utc_now
from issue_sync.services.issue_search import SearchIndexer

BATCH_SIZE = 50
BATCH_PAUSE_SECONDS = 0.01

SYNC_ISSUES_JOB = "sync-issues"
SYNC_PROJECT_ISSUES_JOB = "sync-project-issues"
CREATE_ISSUE_JOB = "create-issue"
UPDATE_ISSUE_JOB = "update-issue"
REFRESH_ISSUE_JOB = "refresh-issue"

SYNC_JOB_OPTIONS = {
    'attempts': 3,
    'backoff': {'type': 'exponential', 'delay': 2000},
    'remove_on_complete': True,
    'remove_on_fail': False,
}
CREATE_JOB_OPTIONS = {
    'attempts': 2,
    'backoff': {'type': 'fixed', 'delay': 1000},
}
REFRESH_JOB_OPTIONS = {
    'attempts': 3,
    'backoff': {'type': 'exponential', 'delay': 1000},
    'remove_on_complete': True,
    'remove_on_fail': False,
}


class SyncOptions(BaseModel):
    force_refresh: bool = False
    include_metadata: bool = False
    limit: Optional[int] = None


class SyncResult(BaseModel):
    synced: int = 0
    errors: List[str] = []


class RefreshResult(BaseModel):
    success: bool
    error: Optional[str] = None


def _plain(items: List[Any]) -> List[Any]:
    return [item.model_dump() if isinstance(item, BaseModel) else item for item in items]


class SyncService(LoggerMixin):
    """Orchestrates issue synchronization for one process."""

    def __init__(
        self,
        queue,
        integration_manager: IntegrationManager,
        issue_cache: Optional[IssueCache] = None,
        access_policy: Optional[AccessPolicy] = None,
        search_indexer: Optional[SearchIndexer] = None,
    ):
        self.queue = queue
        self.integration_manager = integration_manager
        self.issue_cache = issue_cache if issue_cache is not None else IssueCache()
        self.access_policy = access_policy or PermissiveAccessPolicy()
        self.search_indexer = search_indexer if search_indexer is not None else SearchIndexer()
        # Strong references keep fire-and-forget tasks alive until they finish
        self._background_tasks: Set[asyncio.Task] = set()

    # ---- enqueue ----

    def _enqueue(self, name: str, data: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Optional[str]:
        if self.queue is None:
            self.logger.error("Sync queue not initialized")
            return None

        data['tenant_id'] = get_current_tenant_id()
        job = self.queue.add(name, data, options)
        self.logger.info(f"Queued {name} job {job.id} for integration {data['integration_id']}")
        return job.id

    def queue_sync(self, user_id: str, integration_id: int, options: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self._enqueue(SYNC_ISSUES_JOB, {
            'user_id': user_id,
            'integration_id': integration_id,
            'action': 'sync',
            'data': options or {},
        }, SYNC_JOB_OPTIONS)

    def queue_project_sync(
        self, user_id: str, integration_id: int, project_id: str, options: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        return self._enqueue(SYNC_PROJECT_ISSUES_JOB, {
            'user_id': user_id,
            'integration_id': integration_id,
            'project_id': project_id,
            'action': 'sync',
            'data': options or {},
        })

    def queue_issue_create(self, user_id: str, integration_id: int, issue_data: Dict[str, Any]) -> Optional[str]:
        return self._enqueue(CREATE_ISSUE_JOB, {
            'user_id': user_id,
            'integration_id': integration_id,
            'action': 'create',
            'data': issue_data,
        }, CREATE_JOB_OPTIONS)

    def queue_issue_update(
        self, user_id: str, integration_id: int, issue_id: str, update_data: Dict[str, Any]
    ) -> Optional[str]:
        return self._enqueue(UPDATE_ISSUE_JOB, {
            'user_id': user_id,
            'integration_id': integration_id,
            'issue_id': issue_id,
            'action': 'update',
            'data': update_data,
        })

    def queue_issue_refresh(self, user_id: str, integration_id: int, issue_id: str) -> Optional[str]:
        return self._enqueue(REFRESH_ISSUE_JOB, {
            'user_id': user_id,
            'integration_id': integration_id,
            'issue_id': issue_id,
            'action': 'refresh',
        }, REFRESH_JOB_OPTIONS)

    # ---- shared preconditions ----

    def _load_scoped_session(self, session: Session, user_id: str) -> Session:
        user = session.scalars(
            select(User)
            .options(selectinload(User.role).selectinload(Role.permissions))
            .where(User.id == user_id)
        ).first()
        if user is None:
            raise IssueSyncError("User not found")
        return self.access_policy.scope(session, user)

    @staticmethod
    def _load_integration(session: Session, integration_id: int, user_id: str):
        integration = session.get(Integration, integration_id)
        if integration is None or integration.is_deleted:
            raise IssueSyncError("Integration not found")

        user_auth = session.scalars(
            select(UserIntegrationAuth).where(
                UserIntegrationAuth.integration_id == integration_id,
                UserIntegrationAuth.user_id == user_id,
                UserIntegrationAuth.is_active.is_(True),
            )
        ).first()
        return integration, user_auth

    @staticmethod
    def check_authentication(integration: Integration, user_auth: Optional[UserIntegrationAuth]):
        """Fails the whole job when the integration's auth type has no usable credentials."""
        if integration.auth_type == 'OAUTH2':
            if user_auth is None:
                raise AuthenticationError("User not authenticated for this integration")
            if user_auth.expires_at is not None and user_auth.expires_at < utc_now():
                raise AuthenticationError("Authentication token has expired")

        elif integration.auth_type in ('API_KEY', 'PERSONAL_ACCESS_TOKEN'):
            if not integration.credentials:
                raise AuthenticationError("Integration is missing credentials")

        elif integration.auth_type != 'NONE':
            if user_auth is None and not integration.credentials:
                raise AuthenticationError("No authentication credentials found for this integration")

    async def _resolve_adapter(self, session: Session, integration_id: int, tenant_id: Optional[str]):
        adapter = await self.integration_manager.get_adapter(integration_id, session=session, tenant_id=tenant_id)
        if adapter is None:
            raise IssueSyncError("Invalid adapter for issue synchronization")
        return adapter

    # ---- execute ----

    async def perform_sync(
        self,
        user_id: str,
        integration_id: int,
        project_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        job=None,
        db: Optional[DatabaseClient] = None,
        tenant_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Re-fetches every local issue of the integration from the provider.

        Per-issue failures are collected into `errors` and never stop the loop; only
        precondition failures (user, integration, credentials, adapter) end the sync.
        """
        sync_options = SyncOptions(**(options or {}))
        db = db or get_default_client()
        result = SyncResult()

        session = db.get_session()
        try:
            session = self._load_scoped_session(session, user_id)
            integration, user_auth = self._load_integration(session, integration_id, user_id)
            self.check_authentication(integration, user_auth)
            adapter = await self._resolve_adapter(session, integration_id, tenant_id)

            conditions = [Issue.integration_id == integration_id]
            if project_id:
                conditions.append(Issue.project_id == int(project_id))

            total = session.scalar(select(func.count()).select_from(Issue).where(*conditions)) or 0
            self.logger.info(f"Syncing {total} issues for integration {integration_id}")

            processed = 0
            while processed < total:
                batch = session.execute(
                    select(Issue.id, Issue.external_id, Issue.external_key, Issue.name)
                    .where(*conditions)
                    .order_by(Issue.id)
                    .offset(processed)
                    .limit(BATCH_SIZE)
                ).all()
                if not batch:
                    break

                for offset, local_issue in enumerate(batch):
                    position = processed + offset + 1
                    try:
                        if job is not None:
                            await job.update_progress({
                                'current': position,
                                'total': total,
                                'percentage': round(position / total * 100),
                                'message': f"Syncing issue {position} of {total}",
                            })

                        identifier = local_issue.external_id or local_issue.external_key or local_issue.name
                        if not identifier:
                            result.errors.append(f"Issue {local_issue.id} has no external identifier")
                            continue

                        issue_data = await adapter.sync_issue(identifier)
                        self.issue_cache.set(integration_id, issue_data)
                        self.update_existing_issue(session, integration_id, issue_data, db=db, tenant_id=tenant_id)
                        result.synced += 1

                    except Exception as e:
                        session.rollback()
                        reference = local_issue.external_key or local_issue.external_id or local_issue.id
                        self.logger.warning(f"Failed to sync issue {reference}: {e}")
                        result.errors.append(f"Failed to sync issue {reference}: {e}")

                processed += len(batch)
                if processed < total:
                    await asyncio.sleep(BATCH_PAUSE_SECONDS)

            if sync_options.include_metadata:
                await self._sync_metadata(adapter, integration_id, result)

        except Exception as e:
            self.logger.error(f"❌ Sync failed for integration {integration_id}: {e}")
            result.errors.append(f"Sync failed: {e}")
        finally:
            session.close()

        self.logger.info(
            f"Sync finished for integration {integration_id}: {result.synced} synced, {len(result.errors)} errors"
        )
        return result

    async def _sync_metadata(self, adapter, integration_id: int, result: SyncResult):
        capabilities = adapter.get_capabilities()
        try:
            metadata: Dict[str, Any] = {}
            if capabilities.projects:
                metadata['projects'] = _plain(await adapter.get_projects())
            if capabilities.statuses:
                metadata['statuses'] = _plain(await adapter.get_statuses())
            if capabilities.priorities:
                metadata['priorities'] = _plain(await adapter.get_priorities())
            self.issue_cache.set_metadata(integration_id, metadata)
        except Exception as e:
            result.errors.append(f"Failed to fetch metadata: {e}")

    async def perform_issue_refresh(
        self,
        user_id: str,
        integration_id: int,
        external_issue_id: str,
        db: Optional[DatabaseClient] = None,
        tenant_id: Optional[str] = None,
    ) -> RefreshResult:
        """Re-fetches one issue. Errors are returned, not raised, so the worker decides on retries."""
        db = db or get_default_client()

        session = db.get_session()
        try:
            session = self._load_scoped_session(session, user_id)
            integration, user_auth = self._load_integration(session, integration_id, user_id)
            self.check_authentication(integration, user_auth)
            adapter = await self._resolve_adapter(session, integration_id, tenant_id)

            if not adapter.get_capabilities().sync_issue:
                raise NotSupportedError("This integration does not support syncing individual issues")

            issue_id = external_issue_id
            if integration.provider == PROVIDER_GITHUB:
                issue_id = self.resolve_github_identifier(session, integration_id, external_issue_id)

            issue_data = await adapter.sync_issue(issue_id)
            self.issue_cache.set(integration_id, issue_data)
            self.update_existing_issue(session, integration_id, issue_data, db=db, tenant_id=tenant_id)
            return RefreshResult(success=True)

        except Exception as e:
            session.rollback()
            self.logger.error(f"❌ Failed to refresh issue {external_issue_id}: {e}")
            return RefreshResult(success=False, error=str(e))
        finally:
            session.close()

    @staticmethod
    def resolve_github_identifier(session: Session, integration_id: int, external_issue_id: str) -> str:
        """#42 -> owner/repo#42 using the repository context stored with the local issue."""
        stored = session.scalars(
            select(Issue).where(
                Issue.integration_id == integration_id,
                or_(Issue.external_id == external_issue_id, Issue.external_key == external_issue_id),
            )
        ).first()
        if stored is None:
            return external_issue_id

        sources = [((stored.data or {}).get('customFields') or {}), (stored.external_data or {})]
        for fields in sources:
            owner = fields.get('_github_owner')
            repo = fields.get('_github_repo')
            if owner and repo:
                return f"{owner}/{repo}#{external_issue_id.lstrip('#')}"

        return external_issue_id

    def update_existing_issue(
        self,
        session: Session,
        integration_id: int,
        issue_data: IssueData,
        db: Optional[DatabaseClient] = None,
        tenant_id: Optional[str] = None,
    ) -> Issue:
        """
        Writes fresh provider data onto the matching local issue and commits.

        The local row must exist; issues are never created from external data.
        """
        candidates = [value for value in (issue_data.id, issue_data.key) if value]
        existing = session.scalars(
            select(Issue).where(
                Issue.integration_id == integration_id,
                or_(Issue.external_id.in_(candidates), Issue.external_key.in_(candidates)),
            ).order_by(Issue.id)
        ).first()

        if existing is None:
            raise IssueNotFoundError(
                f"Issue {issue_data.key or issue_data.id} not found in local database. "
                f"Issues must be created through the UI before they can be synced."
            )

        existing.name = issue_data.key or issue_data.id
        existing.title = issue_data.title
        existing.description = issue_data.description or ""
        existing.status = issue_data.status
        existing.priority = issue_data.priority or "medium"
        existing.external_id = issue_data.id
        existing.external_key = issue_data.key
        existing.external_url = issue_data.url
        existing.external_status = issue_data.status
        existing.external_data = issue_data.custom_fields or {}
        existing.issue_type_id = issue_data.issue_type.id if issue_data.issue_type else None
        existing.issue_type_name = issue_data.issue_type.name if issue_data.issue_type else None
        existing.issue_type_icon_url = issue_data.issue_type.icon_url if issue_data.issue_type else None
        existing.last_synced_at = utc_now()
        session.commit()

        self._index_in_background(existing.id, db or get_default_client(), tenant_id)
        return existing

    # ---- search indexing ----

    def _index_in_background(self, issue_id: int, db: DatabaseClient, tenant_id: Optional[str]):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug(f"No running event loop, skipping search indexing for issue {issue_id}")
            return

        task = loop.create_task(self.search_indexer.sync_issue(issue_id, db.SessionLocal, tenant_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_index_done)

    def _on_index_done(self, task: asyncio.Task):
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Search indexing task failed: {task.exception()}")

    async def drain_background_tasks(self):
        """Waits for pending search-index writes."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
