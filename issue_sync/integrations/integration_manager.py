"""
Integration Manager - turns a stored Integration into an authenticated adapter.

Adapters are cached per (tenant, integration id) for the life of the process;
callers clear them explicitly after credential rotation.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from issue_sync.core.encryption import EncryptionService
from issue_sync.core.exceptions import ConfigurationError, IntegrationInactiveError, IntegrationNotFoundError
from issue_sync.core.logging_config import LoggerMixin
from issue_sync.integrations.adapters import (
    AzureDevOpsAdapter,
    GitHubAdapter,
    JiraAdapter,
    SimpleUrlAdapter,
)
from issue_sync.integrations.adapters.base_adapter import BaseAdapter
from issue_sync.integrations.adapters.request_executor import RequestExecutor
from issue_sync.integrations.adapters.types import (
    PROVIDER_AZURE_DEVOPS,
    PROVIDER_GITHUB,
    PROVIDER_JIRA,
    PROVIDER_SIMPLE_URL,
    AdapterCapabilities,
    AuthData,
    ValidationResult,
)
from issue_sync.models.unified_models import Integration, UserIntegrationAuth

AdapterFactory = Callable[[Dict[str, Any], Optional[RequestExecutor]], BaseAdapter]

API_KEY_AUTH_TYPES = ('API_KEY', 'PERSONAL_ACCESS_TOKEN')


def first_value(mapping: Dict[str, Any], *keys: str) -> Any:
    """First non-empty value among `keys`. Stored blobs use camelCase, newer ones snake_case."""
    for key in keys:
        value = mapping.get(key)
        if value:
            return value
    return None


class IntegrationManager(LoggerMixin):
    """Resolves integration ids to authenticated, cached adapters."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        encryption=EncryptionService,
        executor_factory: Optional[Callable[[], RequestExecutor]] = None,
    ):
        self.session_factory = session_factory
        self.encryption = encryption
        self.executor_factory = executor_factory
        self._adapters: Dict[Tuple[Optional[str], str], BaseAdapter] = {}
        self._registry: Dict[str, AdapterFactory] = {
            PROVIDER_JIRA: JiraAdapter,
            PROVIDER_GITHUB: GitHubAdapter,
            PROVIDER_AZURE_DEVOPS: AzureDevOpsAdapter,
            PROVIDER_SIMPLE_URL: lambda config, executor: SimpleUrlAdapter(
                config, executor, session_factory=self.session_factory
            ),
        }

    # ---- registry ----

    def register_adapter(self, provider: str, factory: AdapterFactory):
        self._registry[provider] = factory

    def get_registered_types(self) -> List[str]:
        return list(self._registry.keys())

    def is_type_registered(self, provider: str) -> bool:
        return provider in self._registry

    # ---- adapter lifecycle ----

    async def get_adapter(
        self,
        integration_id: Any,
        session: Optional[Session] = None,
        tenant_id: Optional[str] = None,
    ) -> BaseAdapter:
        """
        Returns the cached adapter or builds, authenticates and caches a new one.

        `session` lets callers load the integration through their own (tenant or
        policy scoped) session; otherwise the manager's session factory is used.
        Missing credentials leave the adapter unauthenticated.
        """
        cache_key = (tenant_id, str(integration_id))
        cached = self._adapters.get(cache_key)
        if cached is not None:
            return cached

        if session is not None:
            adapter = await self._build_adapter(session, integration_id)
        else:
            with self.session_factory() as own_session:
                adapter = await self._build_adapter(own_session, integration_id)

        self._adapters[cache_key] = adapter
        return adapter

    async def _build_adapter(self, session: Session, integration_id: Any) -> BaseAdapter:
        integration = session.get(Integration, int(integration_id))
        if integration is None or integration.is_deleted:
            raise IntegrationNotFoundError(f"Integration not found: {integration_id}")

        if integration.status != 'ACTIVE':
            raise IntegrationInactiveError(f"Integration is not active: {integration_id}")

        factory = self._registry.get(integration.provider)
        if factory is None:
            raise ConfigurationError(f"No adapter registered for integration provider: {integration.provider}")

        settings = integration.settings or {}
        config = {
            'id': integration.id,
            'name': integration.name,
            'provider': integration.provider,
            **settings,
        }
        base_url = first_value(settings, 'base_url', 'baseUrl')
        if base_url:
            config['base_url'] = base_url

        executor = self.executor_factory() if self.executor_factory else None
        adapter = factory(config, executor)

        auth_data = self._build_auth_data(session, integration, settings)
        if auth_data is not None:
            await adapter.authenticate(auth_data)
            self.logger.info(f"✅ Authenticated {integration.provider} adapter for integration {integration.id}")
        else:
            self.logger.debug(f"No credentials stored for integration {integration.id}; adapter left unauthenticated")

        return adapter

    def _build_auth_data(
        self, session: Session, integration: Integration, settings: Dict[str, Any]
    ) -> Optional[AuthData]:
        if integration.auth_type in API_KEY_AUTH_TYPES and integration.credentials:
            credentials = self.decrypt_credentials(integration.credentials)
            api_token = first_value(credentials, 'apiToken', 'api_token')
            return AuthData(
                type='api_key',
                api_key=first_value(credentials, 'personalAccessToken', 'personal_access_token') or api_token,
                email=credentials.get('email'),
                api_token=api_token,
                base_url=(
                    first_value(settings, 'base_url', 'baseUrl')
                    or first_value(credentials, 'baseUrl', 'base_url')
                ),
            )

        user_auth = self.get_active_user_auth(session, integration.id)
        if user_auth is not None:
            return AuthData(
                type='oauth',
                access_token=self.encryption.decrypt(user_auth.access_token) if user_auth.access_token else None,
                refresh_token=self.encryption.decrypt(user_auth.refresh_token) if user_auth.refresh_token else None,
                expires_at=user_auth.expires_at,
            )

        return None

    def decrypt_credentials(self, credentials: Dict[str, Any]) -> Dict[str, Any]:
        """Accepts the legacy plain-object form and the {"encrypted": blob} form."""
        if isinstance(credentials, dict) and 'encrypted' in credentials:
            return self.encryption.decrypt_object(credentials['encrypted'])
        return dict(credentials)

    @staticmethod
    def get_active_user_auth(session: Session, integration_id: int) -> Optional[UserIntegrationAuth]:
        return session.scalars(
            select(UserIntegrationAuth)
            .where(
                UserIntegrationAuth.integration_id == integration_id,
                UserIntegrationAuth.is_active.is_(True),
            )
            .order_by(UserIntegrationAuth.updated_at.desc())
            .limit(1)
        ).first()

    def clear_adapter(self, integration_id: Any, tenant_id: Optional[str] = None):
        self._adapters.pop((tenant_id, str(integration_id)), None)

    def clear_all_adapters(self):
        self._adapters.clear()

    # ---- introspection ----

    async def get_capabilities(self, integration_id: Any) -> AdapterCapabilities:
        adapter = await self.get_adapter(integration_id)
        return adapter.get_capabilities()

    async def validate_integration(self, integration_id: Any) -> ValidationResult:
        try:
            adapter = await self.get_adapter(integration_id)
            if adapter is None:
                return ValidationResult(valid=False, errors=["Adapter not found"])

            if not await adapter.is_authenticated():
                return ValidationResult(valid=False, errors=["Authentication failed"])

            return await adapter.validate_configuration()
        except Exception as e:
            self.logger.warning(f"Integration {integration_id} failed validation: {e}")
            return ValidationResult(valid=False, errors=[str(e)])
