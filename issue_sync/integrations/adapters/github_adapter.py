"""
GitHub Issues adapter (REST API v3), Personal Access Token authentication.

Repository scoped: owner/repo comes from the integration's `repository` setting, from a
create request's project id, or from issue identifiers formatted as owner/repo#number.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from issue_sync.core.exceptions import AuthenticationError, ConfigurationError
from issue_sync.integrations.adapters.base_adapter import BaseAdapter
from issue_sync.integrations.adapters.request_executor import RequestExecutor
from issue_sync.integrations.adapters.rich_text import extract_text, is_editor_document
from issue_sync.integrations.adapters.types import (
    PROVIDER_GITHUB,
    AdapterCapabilities,
    AuthData,
    CreateIssueData,
    IssueData,
    IssueSearchOptions,
    IssueSearchResult,
    IssueUser,
    ProjectInfo,
    UpdateIssueData,
    parse_timestamp,
)

GITHUB_API_URL = "https://api.github.com"
QUALIFIED_ID_RE = re.compile(r'^([^/]+)/([^#]+)#(\d+)$')
REPOSITORY_URL_RE = re.compile(r'/repos/([^/]+)/([^/]+)$')
HTML_URL_RE = re.compile(r'github\.com/([^/]+)/([^/]+)/issues')
CLOSED_STATUSES = {'closed', 'done', 'resolved'}


def map_status_to_github(status: str) -> str:
    return 'closed' if status.lower() in CLOSED_STATUSES else 'open'


def _body_text(description: Any) -> str:
    if is_editor_document(description):
        return extract_text(description)
    return description or ""


class GitHubAdapter(BaseAdapter):
    """Adapter for GitHub Issues."""

    provider = PROVIDER_GITHUB

    def __init__(self, config: Dict[str, Any], executor: Optional[RequestExecutor] = None):
        super().__init__(config, executor)
        self.base_url = GITHUB_API_URL
        self.owner: Optional[str] = None
        self.repo: Optional[str] = None

        repository = config.get('repository')
        if repository and '/' in repository:
            self.owner, self.repo = repository.split('/', 1)

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            create_issue=True,
            update_issue=True,
            link_issue=True,
            sync_issue=True,
            search_issues=True,
            webhooks=False,
            custom_fields=False,
            attachments=False,
            projects=True,
        )

    async def perform_authentication(self, auth_data: AuthData):
        if auth_data.type != 'api_key':
            raise AuthenticationError("GitHub adapter only supports Personal Access Token authentication")

        if not auth_data.api_key:
            raise AuthenticationError("Personal Access Token is required for GitHub authentication")

        try:
            response = await self.executor.fetch("GET", f"{self.base_url}/user", headers=self.build_auth_headers())
        except Exception as e:
            self.logger.error(f"❌ GitHub token validation request failed: {e}")
            raise AuthenticationError("Invalid GitHub Personal Access Token")

        if not response.is_success:
            raise AuthenticationError("Invalid GitHub Personal Access Token")

    def build_url(self, path: str) -> str:
        if path.startswith('/repos/') and self.owner and self.repo:
            path = path.replace('{owner}/{repo}', f"{self.owner}/{self.repo}")
        return f"{self.base_url}{path}"

    def build_auth_headers(self) -> Dict[str, str]:
        headers = super().build_auth_headers()
        headers['Accept'] = 'application/vnd.github.v3+json'
        return headers

    def _require_repository(self):
        if not self.owner or not self.repo:
            raise ConfigurationError("Repository not configured")

    @staticmethod
    def parse_issue_id(issue_id: str) -> Tuple[Optional[str], Optional[str], str]:
        """owner/repo#123 -> (owner, repo, '123'); '#123' or '123' -> (None, None, '123')."""
        match = QUALIFIED_ID_RE.match(issue_id)
        if match:
            return match.group(1), match.group(2), match.group(3)
        return None, None, issue_id.lstrip('#')

    # ---- issues ----

    async def create_issue(self, data: CreateIssueData) -> IssueData:
        if not self.owner or not self.repo:
            if '/' not in data.project_id:
                raise ConfigurationError("GitHub repository not configured. Expected format: owner/repo")
            self.owner, self.repo = data.project_id.split('/', 1)

        payload: Dict[str, Any] = {
            'title': data.title,
            'body': _body_text(data.description),
            'labels': data.labels or [],
        }
        if data.assignee_id:
            payload['assignees'] = [data.assignee_id]

        response = await self.make_request("POST", "/repos/{owner}/{repo}/issues", body=payload)
        issue = self.map_github_issue(response)
        self.logger.info(f"✅ Created GitHub issue {self.owner}/{self.repo}{issue.key}")
        return issue

    async def update_issue(self, issue_id: str, data: UpdateIssueData) -> IssueData:
        owner, repo, number = self.parse_issue_id(issue_id)
        owner, repo = owner or self.owner, repo or self.repo
        if not owner or not repo:
            raise ConfigurationError("Repository not configured")

        payload: Dict[str, Any] = {}
        if data.title is not None:
            payload['title'] = data.title
        if data.description is not None:
            payload['body'] = _body_text(data.description)
        if data.status is not None:
            payload['state'] = map_status_to_github(data.status)
        if data.labels is not None:
            payload['labels'] = data.labels
        if data.assignee_id is not None:
            payload['assignees'] = [data.assignee_id]

        response = await self.make_request("PATCH", f"/repos/{owner}/{repo}/issues/{number}", body=payload)
        return self.map_github_issue(response)

    async def get_issue(self, issue_id: str) -> IssueData:
        owner, repo, number = self.parse_issue_id(issue_id)
        owner, repo = owner or self.owner, repo or self.repo

        if not owner or not repo:
            raise ConfigurationError(
                "GitHub repository not configured. Cannot fetch issue without owner/repo context."
            )

        response = await self.make_request("GET", f"{self.base_url}/repos/{owner}/{repo}/issues/{number}")
        return self.map_github_issue(response)

    @staticmethod
    def build_search_query(options: IssueSearchOptions, owner: Optional[str], repo: Optional[str]) -> str:
        # is:issue excludes pull requests
        parts = ['is:issue']

        if owner and repo:
            parts.append(f"repo:{owner}/{repo}")
        elif options.project_id:
            parts.append(f"repo:{options.project_id}")

        if options.query:
            parts.append(options.query)

        if options.status:
            parts.append(" ".join(f"is:{map_status_to_github(s)}" for s in options.status))

        if options.assignee:
            parts.append(f"assignee:{options.assignee}")

        if options.labels:
            parts.append(" ".join(f'label:"{label}"' for label in options.labels))

        return " ".join(parts)

    async def search_issues(self, options: IssueSearchOptions) -> IssueSearchResult:
        limit = options.limit or 30
        offset = options.offset or 0

        response = await self.make_request(
            "GET",
            f"{self.base_url}/search/issues",
            params={
                'q': self.build_search_query(options, self.owner, self.repo),
                'per_page': limit,
                'page': offset // limit + 1,
                'sort': 'created',
                'order': 'desc',
            },
        )

        items = response.get('items', [])
        total = response.get('total_count', 0)
        return IssueSearchResult(
            issues=[self.map_github_issue(item) for item in items],
            total=total,
            has_more=bool(response.get('incomplete_results')) or total > offset + len(items),
        )

    async def add_comment(self, issue_id: str, comment: str):
        owner, repo, number = self.parse_issue_id(issue_id)
        owner, repo = owner or self.owner, repo or self.repo
        if not owner or not repo:
            raise ConfigurationError("Repository not configured")

        await self.make_request("POST", f"/repos/{owner}/{repo}/issues/{number}/comments", body={'body': comment})

    def format_link_comment(self, test_case_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        comment = f"Linked to test case: {test_case_id}"
        if metadata:
            comment += f"\n\nMetadata: {json.dumps(metadata, indent=2)}"
        return comment

    # ---- repository metadata ----

    async def get_projects(self) -> List[ProjectInfo]:
        repos = await self.make_request(
            "GET", f"{self.base_url}/user/repos", params={'per_page': 100, 'sort': 'updated'}
        )
        return [ProjectInfo(id=repo['full_name'], key=repo['name'], name=repo['full_name']) for repo in repos or []]

    async def get_labels(self) -> List[Dict[str, str]]:
        self._require_repository()
        labels = await self.make_request("GET", "/repos/{owner}/{repo}/labels")
        return [{'id': label['name'], 'name': label['name'], 'color': label.get('color')} for label in labels or []]

    async def get_milestones(self) -> List[Dict[str, str]]:
        self._require_repository()
        milestones = await self.make_request("GET", "/repos/{owner}/{repo}/milestones")
        return [
            {'id': str(milestone['number']), 'title': milestone['title'], 'state': milestone['state']}
            for milestone in milestones or []
        ]

    # ---- mapping ----

    def map_github_issue(self, github_issue: Dict[str, Any]) -> IssueData:
        owner, repo = self.owner, self.repo

        # Search results carry repository_url; single-issue responses have html_url
        repository_url = github_issue.get('repository_url')
        html_url = github_issue.get('html_url')
        match = REPOSITORY_URL_RE.search(repository_url) if repository_url else (
            HTML_URL_RE.search(html_url) if html_url else None
        )
        if match:
            owner, repo = match.group(1), match.group(2)

        number = github_issue['number']
        return IssueData(
            id=str(number),
            key=f"#{number}",
            title=github_issue.get('title') or "",
            description=github_issue.get('body'),
            status=github_issue.get('state') or "open",
            priority=None,
            assignee=self._map_user(github_issue.get('assignee')),
            reporter=self._map_user(github_issue.get('user')),
            labels=[label['name'] for label in github_issue.get('labels') or []],
            # Repo context kept for refreshes of cross-repo identifiers
            custom_fields={'_github_owner': owner, '_github_repo': repo},
            created_at=parse_timestamp(github_issue.get('created_at')),
            updated_at=parse_timestamp(github_issue.get('updated_at')),
            url=html_url,
        )

    @staticmethod
    def _map_user(user: Optional[Dict[str, Any]]) -> Optional[IssueUser]:
        if not user:
            return None
        return IssueUser(id=user['login'], name=user['login'], email=user.get('email'))
