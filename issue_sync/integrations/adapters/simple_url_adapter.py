"""
Simple URL adapter: no provider API, issue links are built from a URL template.

The template holds an {issueId} placeholder (optionally quoted as '{issueId}').
Search reads issues already stored locally for the integration.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from issue_sync.core.exceptions import ConfigurationError, NotSupportedError
from issue_sync.integrations.adapters.base_adapter import BaseAdapter
from issue_sync.integrations.adapters.request_executor import RequestExecutor
from issue_sync.integrations.adapters.types import (
    PROVIDER_SIMPLE_URL,
    AdapterCapabilities,
    AuthData,
    CreateIssueData,
    IssueData,
    IssueSearchOptions,
    IssueSearchResult,
    UpdateIssueData,
    ValidationResult,
)
from issue_sync.models.unified_models import Issue

PLACEHOLDER = "{issueId}"
QUOTED_PLACEHOLDER = "'{issueId}'"
DEFAULT_SEARCH_LIMIT = 10


def is_valid_url(url: str) -> bool:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.host)


class SimpleUrlAdapter(BaseAdapter):
    """Link-only adapter for trackers without an API integration."""

    provider = PROVIDER_SIMPLE_URL

    def __init__(
        self,
        config: Dict[str, Any],
        executor: Optional[RequestExecutor] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        super().__init__(config, executor)
        self.base_url: Optional[str] = config.get('base_url')
        self.integration_id: Optional[int] = config.get('integration_id', config.get('id'))
        self.session_factory = session_factory

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(link_issue=True, search_issues=True)

    async def perform_authentication(self, auth_data: AuthData):
        if not self.base_url and not auth_data.base_url:
            raise ConfigurationError("Base URL is required for Simple URL integration")
        if not self.base_url:
            self.base_url = auth_data.base_url

    async def is_authenticated(self) -> bool:
        # Nothing to authenticate against
        return bool(self.base_url)

    def generate_url(self, issue_id: str) -> str:
        if not self.base_url:
            raise ConfigurationError("Base URL not configured")
        return self.base_url.replace(QUOTED_PLACEHOLDER, issue_id).replace(PLACEHOLDER, issue_id)

    async def create_issue(self, data: CreateIssueData) -> IssueData:
        raise NotSupportedError("Creating issues is not supported by Simple URL integration")

    async def update_issue(self, issue_id: str, data: UpdateIssueData) -> IssueData:
        raise NotSupportedError("Updating issues is not supported by Simple URL integration")

    async def get_issue(self, issue_id: str) -> IssueData:
        url = self.generate_url(issue_id)
        now = datetime.now(timezone.utc)
        return IssueData(
            id=issue_id,
            key=issue_id,
            title=f"Issue {issue_id}",
            description="Issue linked via Simple URL integration",
            status="Unknown",
            created_at=now,
            updated_at=now,
            url=url,
        )

    async def search_issues(self, options: IssueSearchOptions) -> IssueSearchResult:
        if not self.base_url:
            raise ConfigurationError("Base URL not configured")
        if self.integration_id is None:
            raise ConfigurationError("Integration ID not configured")
        if self.session_factory is None:
            raise ConfigurationError("Database session not configured for Simple URL search")

        limit = options.limit or DEFAULT_SEARCH_LIMIT
        offset = options.offset or 0

        conditions = [Issue.integration_id == self.integration_id, Issue.is_deleted.is_(False)]
        query = (options.query or "").strip()
        if query:
            pattern = f"%{query}%"
            conditions.append(or_(
                Issue.name.ilike(pattern),
                Issue.title.ilike(pattern),
                Issue.description.ilike(pattern),
                Issue.external_id.ilike(pattern),
                Issue.external_key.ilike(pattern),
            ))

        with self.session_factory() as session:
            total = session.scalar(select(func.count()).select_from(Issue).where(*conditions)) or 0
            rows = session.scalars(
                select(Issue).where(*conditions).order_by(Issue.created_at.desc()).offset(offset).limit(limit)
            ).all()
            issues = [self._map_local_issue(row) for row in rows]

        return IssueSearchResult(issues=issues, total=total, has_more=offset + len(issues) < total)

    def _map_local_issue(self, issue: Issue) -> IssueData:
        identifier = issue.external_key or issue.external_id or issue.name
        return IssueData(
            id=issue.external_id or str(issue.id),
            key=identifier,
            title=issue.title or issue.name,
            description=issue.description,
            status=issue.external_status or issue.status or "Unknown",
            priority=issue.priority,
            created_at=issue.created_at,
            url=issue.external_url or self.generate_url(identifier),
        )

    async def link_to_test_case(self, issue_id: str, test_case_id: str, metadata: Optional[Dict[str, Any]] = None):
        # No remote side; the link lives in the local database
        url = self.generate_url(issue_id)
        if not is_valid_url(url):
            raise ConfigurationError(f"Invalid URL generated: {url}")

    async def validate_configuration(self) -> ValidationResult:
        errors = []

        if not self.base_url:
            errors.append("Base URL is required")
        elif PLACEHOLDER not in self.base_url:
            errors.append("Base URL must contain {issueId} placeholder")
        elif not is_valid_url(self.generate_url("TEST-1")):
            errors.append("Base URL pattern is not a valid URL format")

        return ValidationResult(valid=not errors, errors=errors or None)
