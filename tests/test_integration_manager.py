"""
Unit tests for IntegrationManager adapter resolution
"""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from issue_sync.core.encryption import EncryptionService
from issue_sync.core.exceptions import ConfigurationError, IntegrationInactiveError, IntegrationNotFoundError
from issue_sync.integrations.adapters import GitHubAdapter, SimpleUrlAdapter
from issue_sync.integrations.adapters.base_adapter import BaseAdapter
from issue_sync.integrations.adapters.types import AdapterCapabilities, AuthData, ValidationResult
from issue_sync.integrations.integration_manager import IntegrationManager
from issue_sync.models import unified_models as models

KEY = "manager-test-key"


class FakeEncryption:
    """EncryptionService bound to a fixed test key."""

    @staticmethod
    def decrypt(value):
        return EncryptionService.decrypt(value, KEY)

    @staticmethod
    def decrypt_object(value):
        return EncryptionService.decrypt_object(value, KEY)


class RecordingAdapter(BaseAdapter):
    provider = "RECORDING"
    instances = []

    def __init__(self, config, executor=None):
        super().__init__(config, executor)
        self.received_auth = None
        RecordingAdapter.instances.append(self)

    def get_capabilities(self):
        return AdapterCapabilities(sync_issue=True, search_issues=True)

    async def perform_authentication(self, auth_data):
        self.received_auth = auth_data

    async def create_issue(self, data):
        raise NotImplementedError

    async def update_issue(self, issue_id, data):
        raise NotImplementedError

    async def get_issue(self, issue_id):
        raise NotImplementedError

    async def search_issues(self, options):
        raise NotImplementedError


class TestRegistry:
    """Test adapter factory registration"""

    def test_builtin_types_registered(self, db_client):
        manager = IntegrationManager(db_client.SessionLocal)

        assert set(manager.get_registered_types()) == {"JIRA", "GITHUB", "AZURE_DEVOPS", "SIMPLE_URL"}
        assert manager.is_type_registered("GITHUB") is True
        assert manager.is_type_registered("LINEAR") is False

    def test_register_custom_type(self, db_client):
        manager = IntegrationManager(db_client.SessionLocal)

        manager.register_adapter("RECORDING", RecordingAdapter)

        assert manager.is_type_registered("RECORDING") is True


class TestGetAdapter:
    """Test building, authenticating and caching adapters"""

    def setup_method(self):
        RecordingAdapter.instances = []

    def _manager(self, db_client):
        manager = IntegrationManager(db_client.SessionLocal, encryption=FakeEncryption)
        manager.register_adapter("RECORDING", RecordingAdapter)
        return manager

    def _integration(self, session, **kwargs):
        values = {'name': "Tracker", 'provider': "RECORDING", 'settings': {'base_url': 'https://tracker.example.com'}}
        values.update(kwargs)
        integration = models.Integration(**values)
        session.add(integration)
        session.commit()
        return integration

    @pytest.mark.asyncio
    async def test_missing_integration(self, db_client):
        with pytest.raises(IntegrationNotFoundError, match="Integration not found: 999"):
            await self._manager(db_client).get_adapter(999)

    @pytest.mark.asyncio
    async def test_deleted_integration_is_not_found(self, db_client, session):
        integration = self._integration(session, is_deleted=True)

        with pytest.raises(IntegrationNotFoundError):
            await self._manager(db_client).get_adapter(integration.id)

    @pytest.mark.asyncio
    async def test_inactive_integration(self, db_client, session):
        integration = self._integration(session, status='INACTIVE')

        with pytest.raises(IntegrationInactiveError, match=f"Integration is not active: {integration.id}"):
            await self._manager(db_client).get_adapter(integration.id)

    @pytest.mark.asyncio
    async def test_unregistered_provider(self, db_client, session):
        integration = self._integration(session, provider="LINEAR")

        with pytest.raises(ConfigurationError, match="No adapter registered for integration provider: LINEAR"):
            await self._manager(db_client).get_adapter(integration.id)

    @pytest.mark.asyncio
    async def test_config_merges_settings(self, db_client, session):
        integration = self._integration(session, settings={'base_url': 'https://t.example.com', 'project': 'QA'})

        adapter = await self._manager(db_client).get_adapter(integration.id)

        assert adapter.config == {
            'id': integration.id,
            'name': "Tracker",
            'provider': "RECORDING",
            'base_url': 'https://t.example.com',
            'project': 'QA',
        }

    @pytest.mark.asyncio
    async def test_no_credentials_leaves_adapter_unauthenticated(self, db_client, session):
        integration = self._integration(session)

        adapter = await self._manager(db_client).get_adapter(integration.id)

        assert adapter.received_auth is None
        assert adapter.authenticated is False

    @pytest.mark.asyncio
    async def test_encrypted_api_key_credentials(self, db_client, session):
        blob = EncryptionService.encrypt_object({'email': 'qa@example.com', 'api_token': 'tok'}, KEY)
        integration = self._integration(session, auth_type='API_KEY', credentials={'encrypted': blob})

        adapter = await self._manager(db_client).get_adapter(integration.id)

        auth = adapter.received_auth
        assert auth.type == 'api_key'
        assert auth.email == 'qa@example.com'
        assert auth.api_token == 'tok'
        assert auth.api_key == 'tok'
        assert auth.base_url == 'https://tracker.example.com'

    @pytest.mark.asyncio
    async def test_plain_personal_access_token(self, db_client, session):
        integration = self._integration(
            session, auth_type='PERSONAL_ACCESS_TOKEN', credentials={'personal_access_token': 'pat'}
        )

        adapter = await self._manager(db_client).get_adapter(integration.id)

        assert adapter.received_auth.api_key == 'pat'

    @pytest.mark.asyncio
    async def test_camel_case_credential_blob(self, db_client, session):
        blob = EncryptionService.encrypt_object(
            {'email': 'qa@example.com', 'apiToken': 'tok', 'baseUrl': 'https://x.atlassian.net'}, KEY
        )
        integration = self._integration(session, auth_type='API_KEY', settings={}, credentials={'encrypted': blob})

        adapter = await self._manager(db_client).get_adapter(integration.id)

        auth = adapter.received_auth
        assert auth.type == 'api_key'
        assert auth.email == 'qa@example.com'
        assert auth.api_token == 'tok'
        assert auth.api_key == 'tok'
        assert auth.base_url == 'https://x.atlassian.net'

    @pytest.mark.asyncio
    async def test_camel_case_personal_access_token(self, db_client, session):
        blob = EncryptionService.encrypt_object({'personalAccessToken': 'pat'}, KEY)
        integration = self._integration(
            session, auth_type='PERSONAL_ACCESS_TOKEN', settings={'baseUrl': 'https://dev.azure.com/acme'},
            credentials={'encrypted': blob},
        )

        adapter = await self._manager(db_client).get_adapter(integration.id)

        assert adapter.received_auth.api_key == 'pat'
        assert adapter.received_auth.base_url == 'https://dev.azure.com/acme'
        assert adapter.config['base_url'] == 'https://dev.azure.com/acme'

    @pytest.mark.asyncio
    async def test_user_grant_on_api_key_integration_is_oauth(self, db_client, session):
        integration = self._integration(session, auth_type='API_KEY')
        session.add(models.User(id="u1", email="qa@example.com"))
        session.add(models.UserIntegrationAuth(
            user_id="u1",
            integration_id=integration.id,
            access_token=EncryptionService.encrypt("access", KEY),
        ))
        session.commit()

        adapter = await self._manager(db_client).get_adapter(integration.id)

        assert adapter.received_auth.type == 'oauth'
        assert adapter.received_auth.access_token == "access"
        assert adapter.received_auth.refresh_token is None

    @pytest.mark.asyncio
    async def test_oauth_user_grant_is_decrypted(self, db_client, session):
        integration = self._integration(session, auth_type='OAUTH2')
        session.add(models.User(id="u1", email="qa@example.com"))
        session.add(models.UserIntegrationAuth(
            user_id="u1",
            integration_id=integration.id,
            access_token=EncryptionService.encrypt("access", KEY),
            refresh_token=EncryptionService.encrypt("refresh", KEY),
            expires_at=datetime(2030, 1, 1),
        ))
        session.commit()

        adapter = await self._manager(db_client).get_adapter(integration.id)

        auth = adapter.received_auth
        assert auth.type == 'oauth'
        assert auth.access_token == "access"
        assert auth.refresh_token == "refresh"
        assert auth.expires_at == datetime(2030, 1, 1)

    @pytest.mark.asyncio
    async def test_adapters_cached_per_tenant(self, db_client, session):
        integration = self._integration(session)
        manager = self._manager(db_client)

        first = await manager.get_adapter(integration.id)
        again = await manager.get_adapter(str(integration.id))
        other_tenant = await manager.get_adapter(integration.id, tenant_id="acme")

        assert first is again
        assert other_tenant is not first
        assert len(RecordingAdapter.instances) == 2

    @pytest.mark.asyncio
    async def test_clear_adapter_rebuilds(self, db_client, session):
        integration = self._integration(session)
        manager = self._manager(db_client)

        first = await manager.get_adapter(integration.id)
        manager.clear_adapter(integration.id)
        second = await manager.get_adapter(integration.id)
        manager.clear_all_adapters()
        third = await manager.get_adapter(integration.id)

        assert first is not second
        assert second is not third

    @pytest.mark.asyncio
    async def test_simple_url_adapter_gets_session_factory(self, db_client, session):
        integration = self._integration(session, provider="SIMPLE_URL", settings={'base_url': 'https://b.example.com/{issueId}'})
        manager = self._manager(db_client)

        adapter = await manager.get_adapter(integration.id)

        assert isinstance(adapter, SimpleUrlAdapter)
        assert adapter.session_factory is db_client.SessionLocal
        assert adapter.integration_id == integration.id

    @pytest.mark.asyncio
    async def test_uses_caller_session(self, db_client, session):
        integration = self._integration(session, provider="GITHUB", settings={'repository': 'acme/web'})
        manager = IntegrationManager(lambda: pytest.fail("session factory must not be used"))

        adapter = await manager.get_adapter(integration.id, session=session)

        assert isinstance(adapter, GitHubAdapter)
        assert adapter.owner == "acme"


class TestValidation:
    """Test integration validation"""

    @pytest.mark.asyncio
    async def test_get_capabilities(self, db_client):
        manager = IntegrationManager(db_client.SessionLocal)
        adapter = RecordingAdapter({})
        manager.get_adapter = AsyncMock(return_value=adapter)

        capabilities = await manager.get_capabilities(1)

        assert capabilities.search_issues is True

    @pytest.mark.asyncio
    async def test_unauthenticated_adapter_fails(self, db_client):
        manager = IntegrationManager(db_client.SessionLocal)
        manager.get_adapter = AsyncMock(return_value=RecordingAdapter({}))

        result = await manager.validate_integration(1)

        assert result == ValidationResult(valid=False, errors=["Authentication failed"])

    @pytest.mark.asyncio
    async def test_missing_adapter(self, db_client):
        manager = IntegrationManager(db_client.SessionLocal)
        manager.get_adapter = AsyncMock(return_value=None)

        result = await manager.validate_integration(1)

        assert result.errors == ["Adapter not found"]

    @pytest.mark.asyncio
    async def test_errors_are_reported(self, db_client):
        manager = IntegrationManager(db_client.SessionLocal)

        result = await manager.validate_integration(404)

        assert result.valid is False
        assert result.errors == ["Integration not found: 404"]

    @pytest.mark.asyncio
    async def test_delegates_to_adapter(self, db_client):
        manager = IntegrationManager(db_client.SessionLocal)
        adapter = RecordingAdapter({'base_url': 'https://tracker.example.com'})
        await adapter.authenticate(AuthData(type='api_key', api_key='k'))
        manager.get_adapter = AsyncMock(return_value=adapter)

        result = await manager.validate_integration(1)

        assert result.valid is True
