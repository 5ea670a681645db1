"""
Unit tests for credential masking and tenant-aware loggers
"""

import logging

from issue_sync.core.logging_config import (
    CredentialMaskingFilter,
    TenantLoggerAdapter,
    get_tenant_logger,
)


def make_record(msg, args=()):
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)


class TestCredentialMaskingFilter:
    """Test secrets are masked before records are emitted"""

    def test_masks_bearer_header(self):
        record = make_record("Authorization: Bearer abcdefghijklmnop")

        assert CredentialMaskingFilter().filter(record) is True
        assert record.msg == "Authorization: Bearer abcd..."

    def test_masks_token_assignment(self):
        record = make_record("retrying with api_token=supersecretvalue")

        CredentialMaskingFilter().filter(record)

        assert record.msg == "retrying with api_token=supe..."

    def test_masks_string_args(self):
        record = make_record("header %s for %d", ("Basic dXNlcjpwYXNzd29yZA==", 3))

        CredentialMaskingFilter().filter(record)

        assert record.args == ("Basic dXNl...", 3)

    def test_leaves_plain_messages(self):
        record = make_record("Synced 12 issues successfully")

        CredentialMaskingFilter().filter(record)

        assert record.msg == "Synced 12 issues successfully"


class TestTenantLogger:
    """Test tenant prefixes"""

    def test_plain_logger_without_tenant(self):
        assert isinstance(get_tenant_logger("issue_sync.test"), logging.Logger)

    def test_prefixes_tenant(self):
        adapter = get_tenant_logger("issue_sync.test", "acme")

        assert isinstance(adapter, TenantLoggerAdapter)
        assert adapter.process("Processing sync job", {}) == ("[acme] Processing sync job", {})
