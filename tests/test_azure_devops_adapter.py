"""
Unit tests for the Azure DevOps adapter
"""

import json

import pytest

from issue_sync.core.exceptions import AuthenticationError, ConfigurationError
from issue_sync.integrations.adapters.azure_devops_adapter import AzureDevOpsAdapter, wiql_quote
from issue_sync.integrations.adapters.types import (
    AuthData,
    CreateIssueData,
    IssueSearchOptions,
    UpdateIssueData,
)

ORG_URL = "https://dev.azure.com/acme"


def work_item(item_id=12, state="Active"):
    return {
        'id': item_id,
        'url': f"{ORG_URL}/_apis/wit/workItems/{item_id}",
        '_links': {'html': {'href': f"{ORG_URL}/Web/_workitems/edit/{item_id}"}},
        'fields': {
            'System.Title': "Checkout fails",
            'System.Description': "<div>Repro</div>",
            'System.State': state,
            'System.AssignedTo': {'displayName': 'Ada', 'uniqueName': 'ada@example.com'},
            'System.CreatedBy': 'build-bot',
            'System.Tags': "ui; checkout",
            'System.CreatedDate': '2024-06-01T08:00:00.123Z',
            'System.ChangedDate': '2024-06-02T08:00:00Z',
            'Microsoft.VSTS.Common.Priority': 2,
            'Custom.Severity': 'High',
            'Custom.Empty': None,
        },
    }


class TestWiql:
    """Test WIQL construction"""

    def test_quote_doubles_single_quotes(self):
        assert wiql_quote("O'Brien") == "'O''Brien'"

    def test_unfiltered_query(self):
        adapter = AzureDevOpsAdapter({'organization_url': ORG_URL})

        assert adapter.build_wiql(IssueSearchOptions()) == (
            "SELECT [System.Id] FROM WorkItems ORDER BY [System.CreatedDate] DESC"
        )

    def test_filters(self):
        adapter = AzureDevOpsAdapter({'organization_url': ORG_URL, 'project': 'Web'})

        wiql = adapter.build_wiql(IssueSearchOptions(query="pay", status=["New", "Active"], labels=["ui"]))

        assert wiql == (
            "SELECT [System.Id] FROM WorkItems WHERE [System.TeamProject] = 'Web' AND "
            "([System.Title] CONTAINS 'pay' OR [System.Description] CONTAINS 'pay') AND "
            "([System.State] = 'New' OR [System.State] = 'Active') AND "
            "([System.Tags] CONTAINS 'ui') ORDER BY [System.CreatedDate] DESC"
        )


class TestMapping:
    """Test work item mapping"""

    def test_maps_work_item(self):
        issue = AzureDevOpsAdapter({'organization_url': ORG_URL}).map_work_item(work_item())

        assert issue.id == "12"
        assert issue.key == "12"
        assert issue.priority == "2"
        assert issue.assignee.id == "ada@example.com"
        assert issue.assignee.name == "Ada"
        assert issue.reporter.id == "build-bot"
        assert issue.labels == ["ui", "checkout"]
        assert issue.custom_fields == {'Custom.Severity': 'High'}
        assert issue.url == f"{ORG_URL}/Web/_workitems/edit/12"


class TestAzureRequests:
    """Test Azure DevOps API calls over a mock transport"""

    async def _authenticated(self, make_executor, handler, config=None):
        handler.routes[("GET", "/acme/_apis/projects")] = {'value': []}
        adapter = AzureDevOpsAdapter(
            config if config is not None else {'organization_url': ORG_URL + "/", 'project': 'Web App'},
            make_executor(handler),
        )
        await adapter.authenticate(AuthData(type='api_key', api_key='pat'))
        return adapter

    @pytest.mark.asyncio
    async def test_only_pat_supported(self):
        adapter = AzureDevOpsAdapter({'organization_url': ORG_URL})

        with pytest.raises(AuthenticationError, match="only supports Personal Access Token"):
            await adapter.authenticate(AuthData(type='oauth', access_token='t'))

    @pytest.mark.asyncio
    async def test_organization_required(self):
        with pytest.raises(AuthenticationError, match="Organization URL is required"):
            await AzureDevOpsAdapter({}).authenticate(AuthData(type='api_key', api_key='pat'))

    @pytest.mark.asyncio
    async def test_invalid_token(self, make_executor, recording_handler):
        recording_handler.routes[("GET", "/acme/_apis/projects")] = (401, {})
        adapter = AzureDevOpsAdapter({'organization_url': ORG_URL}, make_executor(recording_handler))

        with pytest.raises(AuthenticationError, match="Invalid Azure DevOps Personal Access Token"):
            await adapter.authenticate(AuthData(type='api_key', api_key='bad'))

        # Credential checks are not retried
        [request] = recording_handler.requests
        assert request.headers['Authorization'].startswith("Basic ")
        assert request.url.params['api-version'] == adapter.api_version

    @pytest.mark.asyncio
    async def test_create_sends_json_patch(self, make_executor, recording_handler):
        adapter = await self._authenticated(make_executor, recording_handler)
        recording_handler.routes[("POST", "/acme/Web App/_apis/wit/workitems/$Bug")] = work_item(30, state="New")

        issue = await adapter.create_issue(CreateIssueData(
            project_id="ignored", title="Checkout fails", description="Repro", priority="2",
            labels=["ui", "checkout"], custom_fields={'Custom.Severity': 'High'},
        ))

        request = recording_handler.last("POST")
        patch = json.loads(request.content)
        assert request.headers['Content-Type'] == 'application/json-patch+json'
        assert {'op': 'add', 'path': '/fields/System.Title', 'value': "Checkout fails"} in patch
        assert {'op': 'add', 'path': '/fields/Microsoft.VSTS.Common.Priority', 'value': 2} in patch
        assert {'op': 'add', 'path': '/fields/System.Tags', 'value': "ui; checkout"} in patch
        assert {'op': 'add', 'path': '/fields/Custom.Severity', 'value': 'High'} in patch
        assert issue.id == "30"

    @pytest.mark.asyncio
    async def test_create_requires_project(self, make_executor, recording_handler):
        adapter = await self._authenticated(make_executor, recording_handler, config={'organization_url': ORG_URL})

        with pytest.raises(ConfigurationError, match="Azure DevOps project not configured"):
            await adapter.create_issue(CreateIssueData(project_id="", title="x"))

    @pytest.mark.asyncio
    async def test_update_uses_replace_ops(self, make_executor, recording_handler):
        adapter = await self._authenticated(make_executor, recording_handler)
        recording_handler.routes[("PATCH", "/acme/_apis/wit/workitems/12")] = work_item(state="Resolved")

        issue = await adapter.update_issue("12", UpdateIssueData(status="Resolved"))

        patch = json.loads(recording_handler.last("PATCH").content)
        assert patch == [{'op': 'replace', 'path': '/fields/System.State', 'value': "Resolved"}]
        assert issue.status == "Resolved"

    @pytest.mark.asyncio
    async def test_search_slices_ids(self, make_executor, recording_handler):
        adapter = await self._authenticated(make_executor, recording_handler)
        recording_handler.routes[("POST", "/acme/_apis/wit/wiql")] = {
            'workItems': [{'id': n} for n in (1, 2, 3, 4, 5)]
        }
        recording_handler.routes[("GET", "/acme/_apis/wit/workitems")] = {
            'value': [work_item(3), work_item(4)]
        }

        result = await adapter.search_issues(IssueSearchOptions(limit=2, offset=2))

        assert recording_handler.last("GET").url.params['ids'] == "3,4"
        assert [issue.id for issue in result.issues] == ["3", "4"]
        assert result.total == 5
        assert result.has_more is True

    @pytest.mark.asyncio
    async def test_search_without_results(self, make_executor, recording_handler):
        adapter = await self._authenticated(make_executor, recording_handler)
        recording_handler.routes[("POST", "/acme/_apis/wit/wiql")] = {'workItems': []}

        result = await adapter.search_issues(IssueSearchOptions())

        assert result.issues == []
        assert result.total == 0
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_upload_attachment_links_relation(self, make_executor, recording_handler):
        adapter = await self._authenticated(make_executor, recording_handler)
        recording_handler.routes[("POST", "/acme/_apis/wit/attachments")] = {
            'id': 'att-1', 'url': f"{ORG_URL}/_apis/wit/attachments/att-1"
        }
        recording_handler.routes[("PATCH", "/acme/_apis/wit/workitems/12")] = work_item()

        attachment = await adapter.upload_attachment("12", b"log data", "run.log")

        upload = recording_handler.last("POST")
        relation = json.loads(recording_handler.last("PATCH").content)
        assert upload.content == b"log data"
        assert upload.headers['Content-Type'] == 'application/octet-stream'
        assert relation[0]['value'] == {'rel': 'AttachedFile', 'url': attachment['url']}
        assert attachment['id'] == 'att-1'

    @pytest.mark.asyncio
    async def test_issue_types_require_project(self, make_executor, recording_handler):
        adapter = await self._authenticated(make_executor, recording_handler, config={'organization_url': ORG_URL})

        with pytest.raises(ConfigurationError, match="Project not specified"):
            await adapter.get_issue_types()

    @pytest.mark.asyncio
    async def test_static_statuses_and_priorities(self):
        adapter = AzureDevOpsAdapter({'organization_url': ORG_URL})

        statuses = await adapter.get_statuses()
        priorities = await adapter.get_priorities()

        assert statuses[0] == {'id': 'New', 'name': 'New'}
        assert priorities[0] == {'id': '1', 'name': '1 - Critical'}
