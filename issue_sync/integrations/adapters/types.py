"""
Provider-agnostic request/response models shared by every issue adapter.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


PROVIDER_JIRA = "JIRA"
PROVIDER_GITHUB = "GITHUB"
PROVIDER_AZURE_DEVOPS = "AZURE_DEVOPS"
PROVIDER_SIMPLE_URL = "SIMPLE_URL"


_OFFSET_NO_COLON = re.compile(r'([+-]\d{2})(\d{2})$')


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parses provider timestamps ('Z', '+0000' and '+00:00' offsets)."""
    if not value:
        return None
    normalized = value.strip()
    if normalized.endswith('Z'):
        normalized = normalized[:-1] + '+00:00'
    normalized = _OFFSET_NO_COLON.sub(r'\1:\2', normalized)
    try:
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


class AuthData(BaseModel):
    """Tagged authentication payload handed to adapter.authenticate()."""
    model_config = ConfigDict(extra='allow')

    type: Literal['oauth', 'api_key', 'basic', 'none']
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    api_key: Optional[str] = None
    email: Optional[str] = None
    api_token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    base_url: Optional[str] = None


class AdapterCapabilities(BaseModel):
    """What an adapter supports. Callers check these before optional operations."""
    create_issue: bool = False
    update_issue: bool = False
    link_issue: bool = False
    sync_issue: bool = False
    search_issues: bool = False
    webhooks: bool = False
    custom_fields: bool = False
    attachments: bool = False
    # Metadata methods used by a full sync with include_metadata
    projects: bool = False
    statuses: bool = False
    priorities: bool = False


class IssueUser(BaseModel):
    id: str
    name: str
    email: Optional[str] = None


class IssueType(BaseModel):
    id: str
    name: str
    icon_url: Optional[str] = None


class IssueData(BaseModel):
    """Normalized issue returned by every adapter."""
    id: str
    key: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: str
    priority: Optional[str] = None
    issue_type: Optional[IssueType] = None
    assignee: Optional[IssueUser] = None
    reporter: Optional[IssueUser] = None
    labels: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    url: Optional[str] = None


class CreateIssueData(BaseModel):
    project_id: str
    title: str
    # Plain text, HTML, or rich-text editor JSON ({"type": "doc", ...})
    description: Optional[Any] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    issue_type: Optional[str] = None
    assignee_id: Optional[str] = None
    labels: Optional[List[str]] = None
    custom_fields: Optional[Dict[str, Any]] = None


class UpdateIssueData(BaseModel):
    title: Optional[str] = None
    description: Optional[Any] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    assignee_id: Optional[str] = None
    labels: Optional[List[str]] = None
    custom_fields: Optional[Dict[str, Any]] = None


class IssueSearchOptions(BaseModel):
    query: Optional[str] = None
    project_id: Optional[str] = None
    status: Optional[List[str]] = None
    assignee: Optional[str] = None
    labels: Optional[List[str]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    full_sync: bool = False


class IssueSearchResult(BaseModel):
    issues: List[IssueData]
    total: int
    has_more: bool


class ValidationResult(BaseModel):
    valid: bool
    errors: Optional[List[str]] = None


class ProjectInfo(BaseModel):
    id: str
    key: str
    name: str
