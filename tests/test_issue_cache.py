"""
Unit tests for the issue cache
"""

import json
from unittest.mock import AsyncMock, Mock

import pytest
import redis

from issue_sync.integrations.adapters.types import IssueData
from issue_sync.integrations.issue_cache import CachedIssue, IssueCache


def make_issue(external_id="10", key="QA-10", title="Cached"):
    return IssueData(id=external_id, key=key, title=title, status="Open")


class TestSingleIssues:
    """Test single-issue entries"""

    def setup_method(self):
        self.integration_id = 5

    def test_set_then_get(self, fake_redis):
        cache = IssueCache(fake_redis)

        assert cache.set(self.integration_id, make_issue()) is True
        cached = cache.get(self.integration_id, "10")

        assert isinstance(cached, CachedIssue)
        assert cached.key == "QA-10"
        assert cached.integration_id == 5
        assert cached.cached_at is not None
        assert fake_redis.ttls["issue:5:10"] == cache.issue_ttl

    def test_custom_ttl(self, fake_redis):
        cache = IssueCache(fake_redis)

        cache.set(self.integration_id, make_issue(), ttl=60)

        assert cache.get_cache_ttl(self.integration_id, "10") == 60

    def test_miss(self, fake_redis):
        assert IssueCache(fake_redis).get(self.integration_id, "missing") is None

    def test_corrupt_value_is_deleted(self, fake_redis):
        fake_redis.set("issue:5:10", "{not json")
        cache = IssueCache(fake_redis)

        assert cache.get(self.integration_id, "10") is None
        assert "issue:5:10" not in fake_redis.data

    def test_unexpected_shape_is_deleted(self, fake_redis):
        fake_redis.set("issue:5:10", json.dumps({'title': 'no id'}))
        cache = IssueCache(fake_redis)

        assert cache.get(self.integration_id, "10") is None
        assert "issue:5:10" not in fake_redis.data

    def test_store_errors_are_misses(self):
        client = Mock()
        client.get.side_effect = redis.ConnectionError("down")
        client.setex.side_effect = redis.ConnectionError("down")
        cache = IssueCache(client)

        assert cache.get(self.integration_id, "10") is None
        assert cache.set(self.integration_id, make_issue()) is False

    def test_without_connection(self):
        cache = IssueCache(connection=None)
        cache.client = None

        assert cache.get(1, "1") is None
        assert cache.set(1, make_issue()) is False
        assert cache.set_bulk(1, [make_issue()]) is False
        assert cache.get_cache_ttl(1, "1") == -1


class TestBulkEntries:
    """Test bulk lists and invalidation"""

    def test_set_bulk_writes_list_and_singles(self, fake_redis):
        cache = IssueCache(fake_redis)
        issues = [make_issue("1", "QA-1"), make_issue("2", "QA-2")]

        assert cache.set_bulk(7, issues) is True

        assert [issue.key for issue in cache.get_bulk(7)] == ["QA-1", "QA-2"]
        assert cache.get(7, "2").key == "QA-2"

    def test_project_bulk_key(self, fake_redis):
        cache = IssueCache(fake_redis)

        cache.set_bulk(7, [make_issue()], project_id="QA")

        assert "issues:7:project:QA" in fake_redis.data
        assert cache.get_bulk(7) == []
        assert len(cache.get_bulk(7, "QA")) == 1

    def test_invalidate_single_issue(self, fake_redis):
        cache = IssueCache(fake_redis)
        cache.set_bulk(7, [make_issue("1"), make_issue("2")])

        cache.invalidate(7, "1")

        assert cache.get(7, "1") is None
        assert cache.get(7, "2") is not None

    def test_invalidate_integration(self, fake_redis):
        cache = IssueCache(fake_redis)
        cache.set_bulk(7, [make_issue("1")])
        cache.set_bulk(7, [make_issue("2")], project_id="QA")
        cache.set(8, make_issue("1"))

        cache.invalidate(7)

        assert not [key for key in fake_redis.data if key.startswith(("issue:7:", "issues:7:"))]
        assert cache.get(8, "1") is not None

    def test_invalidate_project(self, fake_redis):
        cache = IssueCache(fake_redis)
        cache.set_bulk(7, [make_issue("1")], project_id="QA")

        cache.invalidate_project(7, "QA")

        assert cache.get_bulk(7, "QA") == []
        assert cache.get(7, "1") is not None


class TestMetadata:
    """Test metadata and project list entries"""

    def test_metadata_round_trip(self, fake_redis):
        cache = IssueCache(fake_redis)

        cache.set_metadata(3, {'statuses': [{'id': 'New', 'name': 'New'}]})
        metadata = cache.get_metadata(3)

        assert metadata['statuses'] == [{'id': 'New', 'name': 'New'}]
        assert 'cached_at' in metadata
        assert fake_redis.ttls["issue-metadata:3"] == cache.metadata_ttl

    def test_projects_round_trip(self, fake_redis):
        cache = IssueCache(fake_redis)

        cache.set_projects(3, [{'id': '1', 'key': 'QA', 'name': 'Quality'}])

        assert cache.get_projects(3) == [{'id': '1', 'key': 'QA', 'name': 'Quality'}]
        assert fake_redis.ttls["projects:3"] == cache.projects_ttl

    @pytest.mark.asyncio
    async def test_warm_cache(self, fake_redis):
        cache = IssueCache(fake_redis)
        fetch = AsyncMock(return_value=[make_issue("1"), make_issue("2")])

        await cache.warm_cache(3, fetch)

        assert len(cache.get_bulk(3)) == 2

    @pytest.mark.asyncio
    async def test_warm_cache_swallows_fetch_errors(self, fake_redis):
        cache = IssueCache(fake_redis)
        fetch = AsyncMock(side_effect=RuntimeError("provider down"))

        await cache.warm_cache(3, fetch)

        assert cache.get_bulk(3) == []

    def test_close(self, fake_redis):
        cache = IssueCache(fake_redis)

        cache.close()

        assert fake_redis.closed is True
        assert cache.client is None
