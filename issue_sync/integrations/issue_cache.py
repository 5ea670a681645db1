"""
Issue Cache
Best-effort key-value shadow of provider issues, metadata and project lists.

Never a source of truth: every store error degrades to a miss, and a value that
fails to parse is deleted and reported as a miss.
"""

import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis
from pydantic import ValidationError

from issue_sync.core.cache import duplicate_connection, get_valkey_connection
from issue_sync.core.config import get_settings
from issue_sync.core.logging_config import LoggerMixin
from issue_sync.integrations.adapters.types import IssueData


class CachedIssue(IssueData):
    integration_id: int
    cached_at: datetime


class IssueCache(LoggerMixin):
    """
    Redis-protocol cache for issues keyed by integration.

    Key families:
        issue:{integration_id}:{external_id}          single issue
        issues:{integration_id}:all                   bulk list
        issues:{integration_id}:project:{project_id}  bulk list for one project
        issue-metadata:{integration_id}               provider metadata
        projects:{integration_id}                     provider project list
    """

    def __init__(self, connection: Optional[redis.Redis] = None):
        settings = get_settings()
        # Dedicated connection so cache traffic does not share the job-state pool
        self.client = connection if connection is not None else duplicate_connection(get_valkey_connection())
        self.issue_ttl = settings.ISSUE_CACHE_TTL
        self.metadata_ttl = settings.METADATA_CACHE_TTL
        self.projects_ttl = settings.PROJECTS_CACHE_TTL

    @staticmethod
    def _issue_key(integration_id: int, external_id: str) -> str:
        return f"issue:{integration_id}:{external_id}"

    @staticmethod
    def _bulk_key(integration_id: int, project_id: Optional[str] = None) -> str:
        if project_id:
            return f"issues:{integration_id}:project:{project_id}"
        return f"issues:{integration_id}:all"

    @staticmethod
    def _metadata_key(integration_id: int) -> str:
        return f"issue-metadata:{integration_id}"

    @staticmethod
    def _projects_key(integration_id: int) -> str:
        return f"projects:{integration_id}"

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def _serialize_issue(self, integration_id: int, issue: IssueData, cached_at: str) -> str:
        payload = issue.model_dump(mode='json')
        payload['integration_id'] = integration_id
        payload['cached_at'] = cached_at
        return json.dumps(payload)

    def _read_json(self, key: str) -> Optional[Any]:
        """GET + JSON parse. Corrupt values are deleted; store errors are a miss."""
        if self.client is None:
            return None

        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            self.logger.error(f"Error reading cache key {key}: {e}")
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            self.logger.warning(f"Corrupt cache value at {key}, deleting")
            self._delete(key)
            return None

    def _delete(self, *keys: str):
        if self.client is None or not keys:
            return
        try:
            self.client.delete(*keys)
        except redis.RedisError as e:
            self.logger.error(f"Error deleting cache keys {keys}: {e}")

    def _write(self, key: str, value: str, ttl: int) -> bool:
        if self.client is None:
            return False
        try:
            self.client.setex(key, ttl, value)
            return True
        except redis.RedisError as e:
            self.logger.error(f"Error writing cache key {key}: {e}")
            return False

    # ---- single issues ----

    def get(self, integration_id: int, external_id: str) -> Optional[CachedIssue]:
        key = self._issue_key(integration_id, external_id)
        data = self._read_json(key)
        if data is None:
            return None

        try:
            return CachedIssue.model_validate(data)
        except ValidationError:
            self.logger.warning(f"Cached issue at {key} has an unexpected shape, deleting")
            self._delete(key)
            return None

    def set(self, integration_id: int, issue: IssueData, ttl: Optional[int] = None) -> bool:
        key = self._issue_key(integration_id, issue.id)
        return self._write(key, self._serialize_issue(integration_id, issue, self._now()), ttl or self.issue_ttl)

    # ---- bulk lists ----

    def get_bulk(self, integration_id: int, project_id: Optional[str] = None) -> List[CachedIssue]:
        key = self._bulk_key(integration_id, project_id)
        data = self._read_json(key)
        if not data:
            return []

        try:
            return [CachedIssue.model_validate(item) for item in data]
        except (TypeError, ValidationError):
            self.logger.warning(f"Cached issue list at {key} has an unexpected shape, deleting")
            self._delete(key)
            return []

    def set_bulk(
        self,
        integration_id: int,
        issues: List[IssueData],
        project_id: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> bool:
        """Writes the bulk list, then each issue's single key in one pipeline."""
        if self.client is None:
            return False

        ttl = ttl or self.issue_ttl
        cached_at = self._now()
        serialized = [self._serialize_issue(integration_id, issue, cached_at) for issue in issues]

        bulk_value = "[" + ",".join(serialized) + "]"
        if not self._write(self._bulk_key(integration_id, project_id), bulk_value, ttl):
            return False

        try:
            pipeline = self.client.pipeline()
            for issue, value in zip(issues, serialized):
                pipeline.setex(self._issue_key(integration_id, issue.id), ttl, value)
            pipeline.execute()
            return True
        except redis.RedisError as e:
            self.logger.error(f"Error writing individual issue cache entries: {e}")
            return False

    # ---- invalidation ----

    def invalidate(self, integration_id: int, external_id: Optional[str] = None):
        """Drops one issue, or every issue and bulk list of the integration."""
        if self.client is None:
            return

        if external_id:
            self._delete(self._issue_key(integration_id, external_id))
            return

        try:
            keys = list(self.client.scan_iter(match=f"issue:{integration_id}:*"))
            keys.extend(self.client.scan_iter(match=f"issues:{integration_id}:*"))
            if keys:
                pipeline = self.client.pipeline()
                for key in keys:
                    pipeline.delete(key)
                pipeline.execute()
            self.logger.info(f"Invalidated {len(keys)} cache entries for integration {integration_id}")
        except redis.RedisError as e:
            self.logger.error(f"Error invalidating cache for integration {integration_id}: {e}")

    def invalidate_project(self, integration_id: int, project_id: str):
        self._delete(self._bulk_key(integration_id, project_id))

    # ---- metadata and projects ----

    def get_metadata(self, integration_id: int) -> Optional[Dict[str, Any]]:
        data = self._read_json(self._metadata_key(integration_id))
        return data if isinstance(data, dict) else None

    def set_metadata(self, integration_id: int, metadata: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        value = json.dumps({**metadata, 'cached_at': self._now()}, default=str)
        return self._write(self._metadata_key(integration_id), value, ttl or self.metadata_ttl)

    def get_projects(self, integration_id: int) -> Optional[List[Dict[str, Any]]]:
        data = self._read_json(self._projects_key(integration_id))
        return data if isinstance(data, list) else None

    def set_projects(self, integration_id: int, projects: List[Dict[str, Any]], ttl: Optional[int] = None) -> bool:
        return self._write(self._projects_key(integration_id), json.dumps(projects, default=str), ttl or self.projects_ttl)

    # ---- utilities ----

    def get_cache_ttl(self, integration_id: int, external_id: str) -> int:
        """Remaining TTL in seconds; -1 without a connection or on error."""
        if self.client is None:
            return -1
        try:
            return self.client.ttl(self._issue_key(integration_id, external_id))
        except redis.RedisError as e:
            self.logger.error(f"Error reading cache TTL: {e}")
            return -1

    async def warm_cache(
        self,
        integration_id: int,
        fetch_fn: Callable[[], Awaitable[List[IssueData]]],
        project_id: Optional[str] = None,
    ):
        try:
            issues = await fetch_fn()
            self.set_bulk(integration_id, issues, project_id)
            self.logger.info(f"Warmed cache with {len(issues)} issues for integration {integration_id}")
        except Exception as e:
            self.logger.error(f"Failed to warm cache for integration {integration_id}: {e}")

    def close(self):
        if self.client is not None:
            try:
                self.client.close()
            except redis.RedisError as e:
                self.logger.debug(f"Error closing cache connection (suppressed): {e}")
            finally:
                self.client = None
