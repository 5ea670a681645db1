"""
Issue adapter contract and shared default behavior.

Every provider adapter implements IssueAdapter. BaseAdapter supplies the defaults
(authentication bookkeeping, comment-based test case linking, unsupported webhook
stubs) and composes a RequestExecutor for rate limiting, retries and signing.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from issue_sync.core.exceptions import AuthenticationError, ConfigurationError, NotSupportedError
from issue_sync.core.logging_config import LoggerMixin
from issue_sync.integrations.adapters.request_executor import RequestExecutor, build_auth_headers
from issue_sync.integrations.adapters.types import (
    AdapterCapabilities,
    AuthData,
    CreateIssueData,
    IssueData,
    IssueSearchOptions,
    IssueSearchResult,
    UpdateIssueData,
    ValidationResult,
)


class IssueAdapter(ABC):
    """Operations every issue-tracker adapter exposes."""

    @abstractmethod
    def get_capabilities(self) -> AdapterCapabilities:
        pass

    @abstractmethod
    async def authenticate(self, auth_data: AuthData):
        pass

    @abstractmethod
    async def is_authenticated(self) -> bool:
        pass

    @abstractmethod
    async def create_issue(self, data: CreateIssueData) -> IssueData:
        pass

    @abstractmethod
    async def update_issue(self, issue_id: str, data: UpdateIssueData) -> IssueData:
        pass

    @abstractmethod
    async def get_issue(self, issue_id: str) -> IssueData:
        pass

    @abstractmethod
    async def search_issues(self, options: IssueSearchOptions) -> IssueSearchResult:
        pass

    @abstractmethod
    async def sync_issue(self, issue_id: str) -> IssueData:
        pass

    @abstractmethod
    async def link_to_test_case(self, issue_id: str, test_case_id: str, metadata: Optional[Dict[str, Any]] = None):
        pass

    @abstractmethod
    async def add_comment(self, issue_id: str, comment: str):
        pass

    @abstractmethod
    async def validate_configuration(self) -> ValidationResult:
        pass


class BaseAdapter(IssueAdapter, LoggerMixin):
    """Default adapter behavior. Subclasses implement perform_authentication and CRUD."""

    provider: str = ""

    def __init__(self, config: Dict[str, Any], executor: Optional[RequestExecutor] = None):
        self.config = config
        self.executor = executor or RequestExecutor()
        self.auth_data: Optional[AuthData] = None
        self.authenticated = False

    # ---- authentication ----

    async def authenticate(self, auth_data: AuthData):
        self.auth_data = auth_data
        await self.perform_authentication(auth_data)
        self.authenticated = True

    @abstractmethod
    async def perform_authentication(self, auth_data: AuthData):
        """Provider handshake; raises AuthenticationError on failure."""
        pass

    async def is_authenticated(self) -> bool:
        if not self.authenticated or not self.auth_data:
            return False

        expires_at = self.auth_data.expires_at
        if expires_at is not None:
            now = datetime.now(timezone.utc) if expires_at.tzinfo else datetime.now(timezone.utc).replace(tzinfo=None)
            if expires_at < now:
                self.authenticated = False
                return False

        return await self.validate_authentication()

    async def validate_authentication(self) -> bool:
        """Provider-specific validity check; adapters may override."""
        return True

    # ---- default operations ----

    async def sync_issue(self, issue_id: str) -> IssueData:
        return await self.get_issue(issue_id)

    def format_link_comment(self, test_case_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        comment = f"Linked to test case: {test_case_id}"
        if metadata:
            comment += f"\nMetadata: {json.dumps(metadata)}"
        return comment

    async def link_to_test_case(self, issue_id: str, test_case_id: str, metadata: Optional[Dict[str, Any]] = None):
        await self.add_comment(issue_id, self.format_link_comment(test_case_id, metadata))

    async def add_comment(self, issue_id: str, comment: str):
        raise NotSupportedError("Adding comments is not supported by this adapter")

    async def register_webhook(self, url: str, events: List[str], secret: Optional[str] = None) -> str:
        raise NotSupportedError("Webhook registration is not supported by this adapter")

    async def unregister_webhook(self, webhook_id: str):
        raise NotSupportedError("Webhook unregistration is not supported by this adapter")

    async def process_webhook(self, payload: Dict[str, Any], signature: Optional[str] = None):
        raise NotSupportedError("Webhook processing is not supported by this adapter")

    def get_field_mappings(self) -> List[Dict[str, Any]]:
        return []

    async def validate_configuration(self) -> ValidationResult:
        errors = []

        if not self.auth_data:
            errors.append("No authentication data provided")

        if not self.config.get('base_url') and not (self.auth_data and self.auth_data.base_url):
            errors.append("Base URL is required")

        return ValidationResult(valid=not errors, errors=errors or None)

    # ---- request plumbing ----

    async def apply_rate_limit(self):
        await self.executor.apply_rate_limit()

    async def execute_with_retry(self, operation, retries: Optional[int] = None):
        return await self.executor.execute_with_retry(operation, retries)

    def build_url(self, path: str) -> str:
        base_url = (self.auth_data.base_url if self.auth_data else None) or self.config.get('base_url')
        if not base_url:
            raise ConfigurationError("Base URL not configured")

        if not path.startswith('/'):
            path = f"/{path}"
        return f"{base_url.rstrip('/')}{path}"

    def build_auth_headers(self) -> Dict[str, str]:
        return build_auth_headers(self.auth_data, self.provider)

    async def make_request(
        self,
        method: str,
        path_or_url: str,
        body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[bytes] = None,
    ) -> Any:
        if not self.auth_data:
            raise AuthenticationError("Not authenticated")

        url = path_or_url if path_or_url.startswith('http') else self.build_url(path_or_url)
        request_headers = self.build_auth_headers()
        if headers:
            request_headers.update(headers)

        return await self.executor.request(
            method, url, headers=request_headers, json=body, params=params, content=content
        )
