"""
Azure DevOps Boards adapter (work items), Personal Access Token authentication.
"""

import json
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from issue_sync.core.exceptions import AuthenticationError, ConfigurationError
from issue_sync.integrations.adapters.base_adapter import BaseAdapter
from issue_sync.integrations.adapters.request_executor import RequestExecutor
from issue_sync.integrations.adapters.rich_text import extract_text, is_editor_document
from issue_sync.integrations.adapters.types import (
    PROVIDER_AZURE_DEVOPS,
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

JSON_PATCH_HEADERS = {'Content-Type': 'application/json-patch+json'}

SYSTEM_FIELDS = {
    "System.Id",
    "System.Title",
    "System.Description",
    "System.State",
    "System.AssignedTo",
    "System.CreatedBy",
    "System.CreatedDate",
    "System.ChangedDate",
    "System.Tags",
    "System.TeamProject",
    "System.WorkItemType",
    "Microsoft.VSTS.Common.Priority",
}

# States and priorities are defined per process template; these are the common defaults
DEFAULT_STATUSES = ["New", "Active", "Resolved", "Closed", "Removed"]
DEFAULT_PRIORITIES = [
    ("1", "1 - Critical"),
    ("2", "2 - High"),
    ("3", "3 - Medium"),
    ("4", "4 - Low"),
]


def wiql_quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


class AzureDevOpsAdapter(BaseAdapter):
    """Adapter for Azure DevOps work items."""

    provider = PROVIDER_AZURE_DEVOPS
    api_version = "7.0"

    def __init__(self, config: Dict[str, Any], executor: Optional[RequestExecutor] = None):
        super().__init__(config, executor)
        organization_url = config.get('organization_url')
        self.organization_url: Optional[str] = organization_url.rstrip('/') if organization_url else None
        self.project: Optional[str] = config.get('project')

    def get_capabilities(self) -> AdapterCapabilities:
        return AdapterCapabilities(
            create_issue=True,
            update_issue=True,
            link_issue=True,
            sync_issue=True,
            search_issues=True,
            webhooks=False,
            custom_fields=True,
            attachments=True,
            projects=True,
            statuses=True,
            priorities=True,
        )

    async def perform_authentication(self, auth_data: AuthData):
        if auth_data.type != 'api_key':
            raise AuthenticationError("Azure DevOps adapter only supports Personal Access Token authentication")

        if not auth_data.api_key:
            raise AuthenticationError("Personal Access Token is required for Azure DevOps authentication")

        if not self.organization_url:
            raise AuthenticationError("Organization URL is required for Azure DevOps")

        try:
            response = await self.executor.fetch(
                "GET",
                f"{self.organization_url}/_apis/projects?api-version={self.api_version}",
                headers=self.build_auth_headers(),
            )
        except Exception as e:
            self.logger.error(f"❌ Azure DevOps token validation request failed: {e}")
            raise AuthenticationError("Invalid Azure DevOps Personal Access Token or Organization URL")

        if not response.is_success:
            self.logger.error(f"❌ Azure DevOps token validation failed: HTTP {response.status_code}")
            raise AuthenticationError("Invalid Azure DevOps Personal Access Token or Organization URL")

    def build_url(self, path: str) -> str:
        if not self.organization_url:
            raise ConfigurationError("Organization URL not configured")

        if '{project}' in path and self.project:
            path = path.replace('{project}', quote(self.project, safe=''))

        return f"{self.organization_url}{path}"

    # ---- work items ----

    async def create_issue(self, data: CreateIssueData) -> IssueData:
        if not self.project and data.project_id:
            self.project = data.project_id

        if not self.project:
            raise ConfigurationError("Azure DevOps project not configured")

        patch = [{'op': 'add', 'path': '/fields/System.Title', 'value': data.title}]

        if data.description:
            description = extract_text(data.description) if is_editor_document(data.description) else data.description
            patch.append({'op': 'add', 'path': '/fields/System.Description', 'value': description})

        if data.priority:
            patch.append({'op': 'add', 'path': '/fields/Microsoft.VSTS.Common.Priority', 'value': int(data.priority)})

        if data.assignee_id:
            patch.append({'op': 'add', 'path': '/fields/System.AssignedTo', 'value': data.assignee_id})

        if data.labels:
            patch.append({'op': 'add', 'path': '/fields/System.Tags', 'value': "; ".join(data.labels)})

        for field, value in (data.custom_fields or {}).items():
            patch.append({'op': 'add', 'path': f'/fields/{field}', 'value': value})

        work_item_type = data.issue_type or "Bug"
        response = await self.make_request(
            "POST",
            f"/{{project}}/_apis/wit/workitems/${quote(work_item_type)}?api-version={self.api_version}",
            body=patch,
            headers=JSON_PATCH_HEADERS,
        )
        issue = self.map_work_item(response)
        self.logger.info(f"✅ Created Azure DevOps work item {issue.id} in {self.project}")
        return issue

    async def update_issue(self, issue_id: str, data: UpdateIssueData) -> IssueData:
        patch = []

        if data.title is not None:
            patch.append({'op': 'replace', 'path': '/fields/System.Title', 'value': data.title})
        if data.description is not None:
            description = extract_text(data.description) if is_editor_document(data.description) else data.description
            patch.append({'op': 'replace', 'path': '/fields/System.Description', 'value': description})
        if data.status is not None:
            patch.append({'op': 'replace', 'path': '/fields/System.State', 'value': data.status})
        if data.priority is not None:
            patch.append({'op': 'replace', 'path': '/fields/Microsoft.VSTS.Common.Priority', 'value': int(data.priority)})
        if data.assignee_id is not None:
            patch.append({'op': 'replace', 'path': '/fields/System.AssignedTo', 'value': data.assignee_id})
        if data.labels is not None:
            patch.append({'op': 'replace', 'path': '/fields/System.Tags', 'value': "; ".join(data.labels)})
        for field, value in (data.custom_fields or {}).items():
            patch.append({'op': 'replace', 'path': f'/fields/{field}', 'value': value})

        response = await self.make_request(
            "PATCH",
            f"/_apis/wit/workitems/{issue_id}?api-version={self.api_version}",
            body=patch,
            headers=JSON_PATCH_HEADERS,
        )
        return self.map_work_item(response)

    async def get_issue(self, issue_id: str) -> IssueData:
        response = await self.make_request(
            "GET", f"/_apis/wit/workitems/{issue_id}?api-version={self.api_version}&$expand=all"
        )
        return self.map_work_item(response)

    def build_wiql(self, options: IssueSearchOptions) -> str:
        conditions = []

        project = self.project or options.project_id
        if project:
            conditions.append(f"[System.TeamProject] = {wiql_quote(project)}")

        if options.query:
            term = wiql_quote(options.query)
            conditions.append(f"([System.Title] CONTAINS {term} OR [System.Description] CONTAINS {term})")

        if options.status:
            status_condition = " OR ".join(f"[System.State] = {wiql_quote(s)}" for s in options.status)
            conditions.append(f"({status_condition})")

        if options.assignee:
            conditions.append(f"[System.AssignedTo] = {wiql_quote(options.assignee)}")

        if options.labels:
            label_condition = " OR ".join(f"[System.Tags] CONTAINS {wiql_quote(label)}" for label in options.labels)
            conditions.append(f"({label_condition})")

        where_clause = f"WHERE {' AND '.join(conditions)} " if conditions else ""
        return f"SELECT [System.Id] FROM WorkItems {where_clause}ORDER BY [System.CreatedDate] DESC"

    async def search_issues(self, options: IssueSearchOptions) -> IssueSearchResult:
        wiql_response = await self.make_request(
            "POST",
            f"/_apis/wit/wiql?api-version={self.api_version}&$top={options.limit or 200}",
            body={'query': self.build_wiql(options)},
        )

        work_items = (wiql_response or {}).get('workItems') or []
        if not work_items:
            return IssueSearchResult(issues=[], total=0, has_more=False)

        offset = options.offset or 0
        limit = options.limit or 50
        ids = [str(item['id']) for item in work_items[offset:offset + limit]]
        if not ids:
            return IssueSearchResult(issues=[], total=len(work_items), has_more=False)

        response = await self.make_request(
            "GET",
            f"/_apis/wit/workitems?ids={','.join(ids)}&api-version={self.api_version}&$expand=all",
        )

        return IssueSearchResult(
            issues=[self.map_work_item(item) for item in response.get('value', [])],
            total=len(work_items),
            has_more=offset + len(ids) < len(work_items),
        )

    async def add_comment(self, issue_id: str, comment: str):
        await self.make_request(
            "POST",
            f"/_apis/wit/workitems/{issue_id}/comments?api-version={self.api_version}-preview",
            body={'text': comment},
        )

    def format_link_comment(self, test_case_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        comment = f"Linked to test case: {test_case_id}"
        if metadata:
            comment += f"\n\nMetadata: {json.dumps(metadata, indent=2)}"
        return comment

    async def upload_attachment(self, issue_id: str, file: bytes, filename: str) -> Dict[str, str]:
        """Uploads the file, then relates it to the work item."""
        upload = await self.make_request(
            "POST",
            f"/_apis/wit/attachments?fileName={quote(filename, safe='')}&api-version={self.api_version}",
            content=file,
            headers={'Content-Type': 'application/octet-stream'},
        )

        await self.make_request(
            "PATCH",
            f"/_apis/wit/workitems/{issue_id}?api-version={self.api_version}",
            body=[{'op': 'add', 'path': '/relations/-', 'value': {'rel': 'AttachedFile', 'url': upload['url']}}],
            headers=JSON_PATCH_HEADERS,
        )

        return {'id': upload['id'], 'url': upload['url']}

    # ---- metadata ----

    async def get_projects(self) -> List[ProjectInfo]:
        response = await self.make_request("GET", f"/_apis/projects?api-version={self.api_version}")
        return [
            ProjectInfo(id=project['id'], key=project['name'], name=project['name'])
            for project in response.get('value', [])
        ]

    async def get_issue_types(self, project_id: Optional[str] = None) -> List[Dict[str, str]]:
        project = project_id or self.project
        if not project:
            raise ConfigurationError("Project not specified")

        response = await self.make_request(
            "GET", f"/{quote(project, safe='')}/_apis/wit/workitemtypes?api-version={self.api_version}"
        )
        return [{'id': item['name'], 'name': item['name']} for item in response.get('value', [])]

    async def get_statuses(self) -> List[Dict[str, str]]:
        return [{'id': status, 'name': status} for status in DEFAULT_STATUSES]

    async def get_priorities(self) -> List[Dict[str, str]]:
        return [{'id': priority_id, 'name': name} for priority_id, name in DEFAULT_PRIORITIES]

    # ---- mapping ----

    def map_work_item(self, work_item: Dict[str, Any]) -> IssueData:
        fields = work_item.get('fields') or {}
        priority = fields.get("Microsoft.VSTS.Common.Priority")
        tags = fields.get("System.Tags")

        return IssueData(
            id=str(work_item['id']),
            key=str(work_item['id']),
            title=fields.get("System.Title") or "",
            description=fields.get("System.Description"),
            status=fields.get("System.State") or "",
            priority=str(priority) if priority is not None else None,
            assignee=self._map_identity(fields.get("System.AssignedTo")),
            reporter=self._map_identity(fields.get("System.CreatedBy")),
            labels=[tag.strip() for tag in tags.split(';')] if tags else [],
            custom_fields={
                key: value for key, value in fields.items()
                if key not in SYSTEM_FIELDS and value is not None
            },
            created_at=parse_timestamp(fields.get("System.CreatedDate")),
            updated_at=parse_timestamp(fields.get("System.ChangedDate")),
            url=((work_item.get('_links') or {}).get('html') or {}).get('href') or work_item.get('url'),
        )

    @staticmethod
    def _map_identity(identity: Any) -> Optional[IssueUser]:
        if not identity:
            return None
        if isinstance(identity, str):
            return IssueUser(id=identity, name=identity)
        return IssueUser(
            id=identity.get('uniqueName') or identity.get('id') or "",
            name=identity.get('displayName') or identity.get('uniqueName') or "",
            email=identity.get('uniqueName'),
        )
