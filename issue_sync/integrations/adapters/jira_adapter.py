"""
Jira Cloud adapter (REST API v3).

Supports two authentication modes:
- api_key: email + API token against the site base URL (Basic auth)
- oauth: Atlassian OAuth 2.0 (3LO), requests routed through api.atlassian.com/ex/jira/{cloudId}
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from issue_sync.core.config import get_settings
from issue_sync.core.exceptions import AuthenticationError, ConfigurationError, IssueSyncError, ProviderRequestError
from issue_sync.integrations.adapters.base_adapter import BaseAdapter
from issue_sync.integrations.adapters.rich_text import adf_to_html, html_to_adf, tiptap_to_adf
from issue_sync.integrations.adapters.request_executor import RequestExecutor, basic_credentials
from issue_sync.integrations.adapters.types import (
    PROVIDER_JIRA,
    AdapterCapabilities,
    AuthData,
    CreateIssueData,
    IssueData,
    IssueSearchOptions,
    IssueSearchResult,
    IssueType,
    IssueUser,
    ProjectInfo,
    UpdateIssueData,
    parse_timestamp,
)

ATLASSIAN_AUTH_URL = "https://auth.atlassian.com/authorize"
ATLASSIAN_TOKEN_URL = "https://auth.atlassian.com/oauth/token"
ATLASSIAN_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
ATLASSIAN_API_URL = "https://api.atlassian.com/ex/jira"
OAUTH_SCOPES = "read:jira-work write:jira-work read:jira-user offline_access"

ISSUE_FIELDS = "summary,description,status,priority,issuetype,assignee,reporter,labels,created,updated"
DEFAULT_ISSUE_TYPE_ID = "10001"  # Task
ISSUE_KEY_RE = re.compile(r'^[A-Za-z]+-\d+$')
EXCLUDED_CREATE_FIELDS = {"summary", "description", "issuetype", "project", "reporter"}


def jql_escape(value: str) -> str:
    """Escapes a value for use inside a double-quoted JQL string."""
    return value.replace('\\', '\\\\').replace('"', '\\"')


def description_to_adf(description: Any) -> Optional[Dict[str, Any]]:
    """Editor JSON, HTML or plain text -> ADF document."""
    if isinstance(description, dict) and description.get('type') == 'doc':
        return tiptap_to_adf(description)
    if isinstance(description, str) and '<' in description and '>' in description:
        return html_to_adf(description)
    if isinstance(description, str):
        return {
            "type": "doc",
            "version": 1,
            "content": [{"type": "paragraph", "content": [{"type": "text", "text": description}]}],
        }
    return None


class JiraAdapter(BaseAdapter):
    """Adapter for Jira Cloud."""

    provider = PROVIDER_JIRA

    def __init__(self, config: Dict[str, Any], executor: Optional[RequestExecutor] = None):
        super().__init__(config, executor)
        settings = get_settings()
        self.client_id = settings.JIRA_CLIENT_ID or ""
        self.client_secret = settings.JIRA_CLIENT_SECRET or ""
        self.redirect_uri = settings.JIRA_REDIRECT_URI or ""
        self.cloud_id: Optional[str] = None
        self.api_email: Optional[str] = None
        self.api_token: Optional[str] = None
        self.base_url: Optional[str] = config.get('base_url')

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
        )

    @property
    def uses_api_key(self) -> bool:
        return bool(self.api_email and self.api_token and self.base_url)

    async def perform_authentication(self, auth_data: AuthData):
        if auth_data.type == 'api_key':
            if not auth_data.email or not auth_data.api_token or not auth_data.base_url:
                raise AuthenticationError("API key authentication requires email, apiToken, and baseUrl")

            self.api_email = auth_data.email
            self.api_token = auth_data.api_token
            self.base_url = auth_data.base_url.rstrip('/')

            response = await self.executor.fetch(
                "GET",
                f"{self.base_url}/rest/api/3/myself",
                headers={
                    'Authorization': basic_credentials(self.api_email, self.api_token),
                    'Accept': 'application/json',
                },
            )
            if not response.is_success:
                raise AuthenticationError(f"Jira API authentication failed: {response.reason_phrase}")

        elif auth_data.type == 'oauth':
            if not self.client_id or not self.client_secret or not self.redirect_uri:
                raise AuthenticationError(
                    "Jira OAuth configuration is incomplete. Please check environment variables."
                )

            if not self.cloud_id:
                resources = await self._get_accessible_resources(auth_data.access_token or "")
                if not resources:
                    raise AuthenticationError("No accessible Jira resources found")
                self.cloud_id = resources[0]['id']
                self.logger.info(f"Using Jira cloud id {self.cloud_id}")

        else:
            raise AuthenticationError("Jira adapter only supports OAuth and API key authentication")

    async def _get_accessible_resources(self, access_token: str) -> List[Dict[str, Any]]:
        response = await self.executor.fetch(
            "GET",
            ATLASSIAN_RESOURCES_URL,
            headers={'Authorization': f"Bearer {access_token}", 'Accept': 'application/json'},
        )
        if not response.is_success:
            raise AuthenticationError("Failed to get accessible resources")
        return response.json()

    # ---- OAuth flow helpers ----

    def get_authorization_url(self, state: str) -> str:
        params = {
            'audience': 'api.atlassian.com',
            'client_id': self.client_id,
            'scope': OAUTH_SCOPES,
            'redirect_uri': self.redirect_uri,
            'state': state,
            'response_type': 'code',
            'prompt': 'consent',
        }
        return f"{ATLASSIAN_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, payload: Dict[str, Any], failure: str) -> Dict[str, Any]:
        response = await self.executor.fetch(
            "POST", ATLASSIAN_TOKEN_URL, headers={'Content-Type': 'application/json'}, json=payload
        )
        if not response.is_success:
            raise AuthenticationError(f"{failure}: {response.text}")

        data = response.json()
        expires_in = data.get('expires_in')
        return {
            'access_token': data['access_token'],
            'refresh_token': data.get('refresh_token'),
            'expires_at': datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in else None,
        }

    async def exchange_code_for_tokens(self, code: str) -> Dict[str, Any]:
        return await self._token_request(
            {
                'grant_type': 'authorization_code',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'code': code,
                'redirect_uri': self.redirect_uri,
            },
            "Failed to exchange code for tokens",
        )

    async def refresh_tokens(self, refresh_token: str) -> Dict[str, Any]:
        tokens = await self._token_request(
            {
                'grant_type': 'refresh_token',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'refresh_token': refresh_token,
            },
            "Failed to refresh tokens",
        )
        tokens['refresh_token'] = tokens['refresh_token'] or refresh_token
        return tokens

    # ---- request plumbing ----

    def build_url(self, path: str) -> str:
        if not path.startswith('/'):
            path = f"/{path}"

        if self.uses_api_key:
            return f"{self.base_url}{path}"

        if not self.cloud_id:
            raise ConfigurationError("Cloud ID not set. Please authenticate first.")
        return f"{ATLASSIAN_API_URL}/{self.cloud_id}{path}"

    def build_auth_headers(self) -> Dict[str, str]:
        if self.uses_api_key:
            return {
                'Content-Type': 'application/json',
                'Accept': 'application/json',
                'Authorization': basic_credentials(self.api_email, self.api_token),
            }
        headers = super().build_auth_headers()
        headers['Accept'] = 'application/json'
        return headers

    # ---- issues ----

    async def create_issue(self, data: CreateIssueData) -> IssueData:
        project_field = {'id': data.project_id} if data.project_id.isdigit() else {'key': data.project_id}

        custom_fields = dict(data.custom_fields or {})
        reporter = custom_fields.pop('reporter', None)

        fields: Dict[str, Any] = {
            'project': project_field,
            'summary': data.title,
            'description': description_to_adf(data.description) if data.description else None,
            'issuetype': {'id': data.issue_type or DEFAULT_ISSUE_TYPE_ID},
            'labels': data.labels or [],
        }
        if data.priority:
            fields['priority'] = {'id': data.priority}
        if data.assignee_id:
            fields['assignee'] = {'id': data.assignee_id}
        if reporter:
            fields['reporter'] = reporter
        fields.update(custom_fields)

        response = await self.make_request("POST", "/rest/api/3/issue", body={'fields': fields})

        # Create only returns id/key/self
        if not response or not response.get('key'):
            raise ProviderRequestError("Failed to create issue - no key returned")

        self.logger.info(f"✅ Created Jira issue {response['key']}")
        return await self.get_issue(response['key'])

    async def update_issue(self, issue_id: str, data: UpdateIssueData) -> IssueData:
        fields: Dict[str, Any] = {}

        if data.title is not None:
            fields['summary'] = data.title
        if data.description is not None:
            adf = description_to_adf(data.description)
            if adf is not None:
                fields['description'] = adf
        if data.priority is not None:
            fields['priority'] = {'id': data.priority}
        if data.assignee_id is not None:
            fields['assignee'] = {'id': data.assignee_id}
        if data.labels is not None:
            fields['labels'] = data.labels
        if data.custom_fields:
            fields.update(data.custom_fields)

        await self.make_request("PUT", f"/rest/api/3/issue/{issue_id}", body={'fields': fields})

        if data.status is not None:
            await self._transition_issue(issue_id, data.status)

        return await self.get_issue(issue_id)

    async def _transition_issue(self, issue_id: str, target_status: str):
        response = await self.make_request("GET", f"/rest/api/3/issue/{issue_id}/transitions")

        transition = next(
            (t for t in response.get('transitions', []) if t['to']['name'].lower() == target_status.lower()),
            None
        )
        if transition is None:
            raise IssueSyncError(f"No transition available to status: {target_status}")

        await self.make_request(
            "POST",
            f"/rest/api/3/issue/{issue_id}/transitions",
            body={'transition': {'id': transition['id']}},
        )

    async def get_issue(self, issue_id: str) -> IssueData:
        response = await self.make_request(
            "GET",
            f"/rest/api/3/issue/{issue_id}",
            params={'fields': ISSUE_FIELDS, 'expand': 'names,schema'},
        )
        return self.map_jira_issue(response)

    @staticmethod
    def build_jql(options: IssueSearchOptions) -> str:
        clauses = []

        if options.project_id:
            clauses.append(f'project = "{jql_escape(options.project_id)}"')

        if options.query and options.query.strip():
            query = options.query.strip()
            conditions = []
            if ISSUE_KEY_RE.match(query):
                conditions.append(f'key = "{jql_escape(query.upper())}"')
            conditions.append(f'summary ~ "{jql_escape(query)}*"')
            conditions.append(f'description ~ "{jql_escape(query)}*"')
            clauses.append(f"({' OR '.join(conditions)})")

        if options.status:
            statuses = ", ".join(f'"{jql_escape(s)}"' for s in options.status)
            clauses.append(f"status IN ({statuses})")

        if options.assignee:
            clauses.append(f'assignee = "{jql_escape(options.assignee)}"')

        if options.labels:
            labels = ", ".join(f'"{jql_escape(label)}"' for label in options.labels)
            clauses.append(f"labels IN ({labels})")

        # Jira rejects unbounded queries
        if clauses:
            return " AND ".join(clauses) + " ORDER BY created DESC"
        if options.full_sync:
            return "created >= -365d ORDER BY created DESC"
        return "created >= -30d ORDER BY created DESC"

    async def search_issues(self, options: IssueSearchOptions) -> IssueSearchResult:
        response = await self.make_request(
            "GET",
            "/rest/api/3/search/jql",
            params={
                'jql': self.build_jql(options),
                'startAt': options.offset or 0,
                'maxResults': options.limit or 50,
                'fields': ISSUE_FIELDS,
                'expand': 'names,schema',
            },
        )

        raw_issues = response.get('issues', [])
        start_at = response.get('startAt', options.offset or 0)
        total = response.get('total', len(raw_issues))
        return IssueSearchResult(
            issues=[self.map_jira_issue(issue) for issue in raw_issues],
            total=total,
            has_more=start_at + len(raw_issues) < total,
        )

    async def add_comment(self, issue_id: str, comment: str):
        await self.make_request(
            "POST",
            f"/rest/api/3/issue/{issue_id}/comment",
            body={
                'body': {
                    'type': 'doc',
                    'version': 1,
                    'content': [{'type': 'paragraph', 'content': [{'type': 'text', 'text': comment}]}],
                }
            },
        )

    # ---- metadata ----

    async def get_projects(self) -> List[ProjectInfo]:
        if not self.auth_data:
            raise AuthenticationError("Not authenticated")

        response = await self.make_request("GET", "/rest/api/3/project/search")
        return [
            ProjectInfo(id=str(project['id']), key=project['key'], name=project['name'])
            for project in response.get('values', [])
        ]

    async def get_issue_types(self, project_key: str) -> List[Dict[str, str]]:
        try:
            project = await self.make_request("GET", f"/rest/api/3/project/{project_key}")
            return [{'id': t['id'], 'name': t['name']} for t in project.get('issueTypes', [])]
        except Exception as e:
            self.logger.warning(f"Failed to fetch issue types for project {project_key}, falling back: {e}")

        try:
            all_types = await self.make_request("GET", "/rest/api/3/issuetype")
        except Exception as e:
            self.logger.error(f"❌ Failed to fetch issue types (fallback): {e}")
            raise ProviderRequestError("Failed to fetch issue types from Jira")

        return [{'id': t['id'], 'name': t['name']} for t in all_types if not t.get('subtask')]

    async def get_issue_type_fields(self, project_key: str, issue_type_id: str) -> List[Dict[str, Any]]:
        try:
            metadata = await self.make_request(
                "GET",
                "/rest/api/3/issue/createmeta",
                params={
                    'projectKeys': project_key,
                    'issuetypeIds': issue_type_id,
                    'expand': 'projects.issuetypes.fields',
                },
            )
        except Exception as e:
            self.logger.error(f"Failed to fetch issue type fields: {e}")
            return []

        projects = metadata.get('projects') or [{}]
        issue_types = projects[0].get('issuetypes') or [{}]
        fields = issue_types[0].get('fields') or {}

        return [
            {
                'key': key,
                'name': field.get('name'),
                'required': field.get('required', False),
                'schema': field.get('schema'),
                'allowed_values': field.get('allowedValues'),
                'has_default_value': field.get('hasDefaultValue', False),
                'default_value': field.get('defaultValue'),
                'auto_complete_url': field.get('autoCompleteUrl'),
            }
            for key, field in fields.items()
            if key not in EXCLUDED_CREATE_FIELDS
        ]

    async def search_users(
        self,
        query: str,
        project_key: Optional[str] = None,
        start_at: int = 0,
        max_results: int = 50,
    ) -> Dict[str, Any]:
        """Searches users (assignable users when a project is given), deduplicated by account id."""
        paging = {'startAt': start_at, 'maxResults': max_results}
        is_email = '@' in query
        found: List[Dict[str, Any]] = []

        try:
            if is_email:
                try:
                    found.extend(await self.make_request(
                        "GET", "/rest/api/3/user/search", params={'query': query, **paging}
                    ) or [])
                except Exception as e:
                    self.logger.debug(f"Email user search failed: {e}")

            if project_key and not is_email:
                endpoint, params = "/rest/api/3/user/assignable/search", {'project': project_key, 'query': query, **paging}
            else:
                endpoint, params = "/rest/api/3/user/search", {'query': query, **paging}
            found.extend(await self.make_request("GET", endpoint, params=params) or [])
        except Exception as e:
            self.logger.error(f"❌ Failed to search Jira users: {e}")
            return {'users': [], 'total': 0}

        unique: Dict[str, Dict[str, Any]] = {}
        for user in found:
            account_id = user.get('accountId')
            if account_id and account_id not in unique:
                unique[account_id] = {
                    'account_id': account_id,
                    'display_name': user.get('displayName'),
                    'email_address': user.get('emailAddress'),
                    'avatar_urls': user.get('avatarUrls'),
                }

        users = list(unique.values())
        # Jira does not return a total; assume another page when this one is full
        has_more = len(users) >= max_results
        return {'users': users, 'total': start_at + len(users) + (1 if has_more else 0)}

    async def get_current_user(self) -> Optional[Dict[str, Any]]:
        try:
            user = await self.make_request("GET", "/rest/api/3/myself")
        except Exception as e:
            self.logger.error(f"Failed to get current Jira user: {e}")
            return None
        return {
            'account_id': user.get('accountId'),
            'display_name': user.get('displayName'),
            'email_address': user.get('emailAddress'),
        }

    # ---- mapping ----

    def map_jira_issue(self, jira_issue: Optional[Dict[str, Any]]) -> IssueData:
        if not jira_issue:
            raise IssueSyncError("Invalid Jira issue: issue object is null or undefined")

        ref = jira_issue.get('key') or jira_issue.get('id')
        fields = jira_issue.get('fields')
        if not fields:
            raise IssueSyncError(f"Invalid Jira issue {ref}: missing fields object")
        if not fields.get('summary'):
            raise IssueSyncError(f"Invalid Jira issue {ref}: missing summary field")
        if not fields.get('status'):
            raise IssueSyncError(f"Invalid Jira issue {ref}: missing status field")

        issue_type = fields.get('issuetype')
        self_url = jira_issue.get('self') or ''

        return IssueData(
            id=str(jira_issue['id']),
            key=jira_issue.get('key'),
            title=fields['summary'],
            description=self._extract_description(fields.get('description')),
            status=fields['status']['name'],
            priority=(fields.get('priority') or {}).get('name'),
            issue_type=IssueType(
                id=str(issue_type['id']), name=issue_type['name'], icon_url=issue_type.get('iconUrl')
            ) if issue_type else None,
            assignee=self._map_user(fields.get('assignee')),
            reporter=self._map_user(fields.get('reporter')),
            labels=fields.get('labels') or [],
            custom_fields={
                key: value for key, value in fields.items()
                if key.startswith('customfield_') and value is not None
            },
            created_at=parse_timestamp(fields.get('created')),
            updated_at=parse_timestamp(fields.get('updated')),
            url=f"{self_url.split('/rest/')[0]}/browse/{jira_issue.get('key')}",
        )

    @staticmethod
    def _map_user(user: Optional[Dict[str, Any]]) -> Optional[IssueUser]:
        if not user:
            return None
        return IssueUser(id=user.get('accountId', ''), name=user.get('displayName', ''), email=user.get('emailAddress'))

    @staticmethod
    def _extract_description(description: Any) -> Optional[str]:
        if not description:
            return None
        if isinstance(description, dict) and description.get('type') == 'doc' and description.get('content'):
            return adf_to_html(description['content'])
        return str(description)
