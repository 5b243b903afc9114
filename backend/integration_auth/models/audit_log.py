"""Canonical integration audit log model alias."""

from integration_auth.platform.audit import IntegrationAuditLog, IntegrationAuditAction

__all__ = ["IntegrationAuditLog", "IntegrationAuditAction"]
