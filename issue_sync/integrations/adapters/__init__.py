"""
Issue tracker adapters.
"""

from .azure_devops_adapter import AzureDevOpsAdapter
from .base_adapter import BaseAdapter, IssueAdapter
from .github_adapter import GitHubAdapter
from .jira_adapter import JiraAdapter
from .simple_url_adapter import SimpleUrlAdapter

__all__ = [
    'IssueAdapter',
    'BaseAdapter',
    'JiraAdapter',
    'GitHubAdapter',
    'AzureDevOpsAdapter',
    'SimpleUrlAdapter',
]
