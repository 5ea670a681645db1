"""
Search index sync for issues.

Writes one issue document to the issue index after a local update. Indexing is
best effort: every failure is logged and reported as False, never raised.
"""

from typing import Any, Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from issue_sync.core.config import get_settings
from issue_sync.core.http_client import get_async_client
from issue_sync.core.logging_config import LoggerMixin
from issue_sync.models.unified_models import Issue, Project


def get_issue_index_name(tenant_id: Optional[str] = None) -> str:
    if tenant_id:
        return f"testplanit-{tenant_id}-issues"
    return "testplanit-issues"


def find_issue_project(issue: Issue) -> Optional[Project]:
    """Direct project first, then the first project reachable through a linked entity."""
    if issue.project is not None:
        return issue.project

    candidates = [
        lambda: issue.repository_cases[0].project,
        lambda: issue.sessions[0].project,
        lambda: issue.test_runs[0].project,
        lambda: issue.session_results[0].session.project,
        lambda: issue.test_run_results[0].test_run.project,
        lambda: issue.test_run_step_results[0].test_run_result.test_run.project,
    ]
    for resolve in candidates:
        try:
            project = resolve()
        except (IndexError, AttributeError):
            continue
        if project is not None:
            return project

    return None


def build_issue_document(issue: Issue, project: Project) -> Dict[str, Any]:
    integration_name = issue.integration.name if issue.integration is not None else None
    searchable_content = " ".join([
        issue.name or "",
        issue.title or "",
        issue.description or "",
        issue.external_id or "",
        integration_name or "",
    ])

    return {
        'id': issue.id,
        'project_id': project.id,
        'project_name': project.name,
        'name': issue.name,
        'title': issue.title,
        'description': issue.description,
        'external_id': issue.external_id,
        'external_key': issue.external_key,
        'status': issue.status,
        'url': issue.external_url,
        'issue_system': integration_name or "Unknown",
        'is_deleted': issue.is_deleted,
        'created_at': issue.created_at.isoformat() if issue.created_at else None,
        'last_synced_at': issue.last_synced_at.isoformat() if issue.last_synced_at else None,
        'searchable_content': searchable_content,
    }


class SearchIndexer(LoggerMixin):
    """Indexes issues into the tenant's issue index over the search node's REST API."""

    def __init__(self, node: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.node = (node if node is not None else get_settings().ELASTICSEARCH_NODE) or None
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_async_client()

    @property
    def enabled(self) -> bool:
        return bool(self.node)

    async def sync_issue(
        self,
        issue_id: int,
        session_factory: Callable[[], Session],
        tenant_id: Optional[str] = None,
        index: Optional[str] = None,
    ) -> bool:
        """Returns True when the document was written."""
        if not self.enabled:
            self.logger.debug("Search node not configured, skipping issue indexing")
            return False

        try:
            with session_factory() as session:
                issue = session.get(Issue, issue_id)
                if issue is None:
                    self.logger.warning(f"Issue {issue_id} not found, skipping indexing")
                    return False

                project = find_issue_project(issue)
                if project is None:
                    self.logger.warning(f"Issue {issue.id} ({issue.name}) has no linked project, skipping indexing")
                    return False

                document = build_issue_document(issue, project)

            index_name = index or get_issue_index_name(tenant_id)
            response = await self.client.put(
                f"{self.node.rstrip('/')}/{index_name}/_doc/{issue_id}",
                params={'refresh': 'true'},
                json=document,
            )
            response.raise_for_status()
            return True

        except Exception as e:
            self.logger.error(f"Failed to index issue {issue_id}: {e}")
            return False
