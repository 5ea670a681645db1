"""
Multi-tenant database routing.

Tenant configuration is merged from three sources, in this order:
1) JSON file at TENANT_CONFIG_FILE (default /config/tenants.json)
2) TENANT_CONFIGS environment variable (JSON object, overrides file entries per key)
3) TENANT_<ID>_DATABASE_URL variables (only for tenants not already configured)

Configuration is re-read on every tenant-client resolution so rotated database
credentials take effect without a restart.
"""

import asyncio
import json
import os
import re
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from issue_sync.core.database import DatabaseClient, get_default_client
from issue_sync.core.exceptions import ConfigurationError, JobValidationError
from issue_sync.core.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TENANT_CONFIG_FILE = "/config/tenants.json"
TENANT_URL_PATTERN = re.compile(r'^TENANT_([A-Z0-9_]+)_DATABASE_URL$')


class TenantConfig(BaseModel):
    """Database and search-index settings for one tenant."""
    tenant_id: str
    database_url: str
    elasticsearch_node: Optional[str] = None
    elasticsearch_index: Optional[str] = None


def is_multi_tenant_mode() -> bool:
    return os.getenv("MULTI_TENANT_MODE") == "true"


def get_current_tenant_id() -> Optional[str]:
    """Tenant id of this process (INSTANCE_TENANT_ID), only in multi-tenant mode."""
    if not is_multi_tenant_mode():
        return None
    return os.getenv("INSTANCE_TENANT_ID") or None


def _parse_entry(tenant_id: str, entry: Dict[str, Any]) -> TenantConfig:
    return TenantConfig(
        tenant_id=tenant_id,
        database_url=entry["databaseUrl"],
        elasticsearch_node=entry.get("elasticsearchNode"),
        elasticsearch_index=entry.get("elasticsearchIndex"),
    )


def load_tenant_configs() -> Dict[str, TenantConfig]:
    """Loads and merges tenant configurations from file and environment."""
    configs: Dict[str, TenantConfig] = {}

    config_file = os.getenv("TENANT_CONFIG_FILE", DEFAULT_TENANT_CONFIG_FILE)
    if os.path.exists(config_file):
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                file_configs = json.load(f)
            for tenant_id, entry in file_configs.items():
                configs[tenant_id] = _parse_entry(tenant_id, entry)
            logger.info(f"Loaded {len(file_configs)} tenant configurations from {config_file}")
        except Exception as e:
            logger.error(f"Failed to load tenant config file {config_file}: {e}")

    configs_env = os.getenv("TENANT_CONFIGS")
    if configs_env:
        try:
            env_configs = json.loads(configs_env)
            for tenant_id, entry in env_configs.items():
                configs[tenant_id] = _parse_entry(tenant_id, entry)
            logger.info(f"Loaded {len(env_configs)} tenant configurations from TENANT_CONFIGS")
        except Exception as e:
            logger.error(f"Failed to parse TENANT_CONFIGS: {e}")

    for name, value in os.environ.items():
        match = TENANT_URL_PATTERN.match(name)
        if not match or not value:
            continue
        env_key = match.group(1)
        tenant_id = env_key.lower()
        if tenant_id in configs:
            continue
        configs[tenant_id] = TenantConfig(
            tenant_id=tenant_id,
            database_url=value,
            elasticsearch_node=os.getenv(f"TENANT_{env_key}_ELASTICSEARCH_NODE"),
            elasticsearch_index=os.getenv(f"TENANT_{env_key}_ELASTICSEARCH_INDEX"),
        )
        logger.info(f"Loaded tenant configuration for {tenant_id} from environment variables")

    if not configs:
        logger.warning("No tenant configurations found. Multi-tenant mode will not work without configurations.")

    return configs


def validate_multi_tenant_job_data(data: Dict[str, Any]):
    """Multi-tenant workers only accept jobs that name their tenant."""
    if is_multi_tenant_mode() and not data.get("tenant_id"):
        raise JobValidationError("tenantId is required in multi-tenant mode")


class TenantClientRegistry:
    """
    Process-local cache of tenant database clients.

    Owned by the worker entry point and injected where tenant routing is needed.
    """

    def __init__(
        self,
        client_factory: Callable[[str], DatabaseClient] = DatabaseClient,
        default_client_factory: Callable[[], DatabaseClient] = get_default_client,
        config_loader: Callable[[], Dict[str, TenantConfig]] = load_tenant_configs,
    ):
        self.client_factory = client_factory
        self.default_client_factory = default_client_factory
        self.config_loader = config_loader
        self._clients: Dict[str, DatabaseClient] = {}
        self._configs: Dict[str, TenantConfig] = {}

    def get_default_client(self) -> DatabaseClient:
        return self.default_client_factory()

    def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        self._configs = self.config_loader()
        return self._configs.get(tenant_id)

    def get_all_tenant_ids(self) -> List[str]:
        self._configs = self.config_loader()
        return list(self._configs.keys())

    def get_tenant_client(self, tenant_id: str) -> DatabaseClient:
        """Returns the tenant's client, recreating it if its database URL changed."""
        config = self.get_tenant_config(tenant_id)
        if config is None:
            raise ConfigurationError(f"No configuration found for tenant: {tenant_id}")

        cached = self._clients.get(tenant_id)
        if cached is not None:
            if cached.database_url == config.database_url:
                return cached
            logger.info(f"Database URL changed for tenant {tenant_id}, recreating client")
            del self._clients[tenant_id]
            self._schedule_disconnect(tenant_id, cached)

        client = self.client_factory(config.database_url)
        self._clients[tenant_id] = client
        logger.info(f"✅ Created database client for tenant {tenant_id}")
        return client

    def get_client_for_job(self, data: Dict[str, Any]) -> DatabaseClient:
        """Default client in single-tenant mode, the tenant's client otherwise."""
        if not is_multi_tenant_mode():
            return self.get_default_client()

        tenant_id = data.get("tenant_id")
        if not tenant_id:
            raise JobValidationError("tenantId is required in multi-tenant mode")
        return self.get_tenant_client(tenant_id)

    def _schedule_disconnect(self, tenant_id: str, client: DatabaseClient):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            loop.run_in_executor(None, self._disconnect_quietly, tenant_id, client)
        else:
            self._disconnect_quietly(tenant_id, client)

    @staticmethod
    def _disconnect_quietly(tenant_id: str, client: DatabaseClient):
        try:
            client.disconnect()
        except Exception as e:
            logger.error(f"Error disconnecting old client for tenant {tenant_id}: {e}")

    def disconnect_all(self):
        """Disconnects every cached tenant client."""
        for tenant_id, client in list(self._clients.items()):
            try:
                client.disconnect()
                logger.info(f"Disconnected client for tenant {tenant_id}")
            except Exception as e:
                logger.error(f"Error disconnecting client for tenant {tenant_id}: {e}")
        self._clients.clear()

    def __len__(self) -> int:
        return len(self._clients)
