"""
Policy-scoped data access.

The sync service never queries with the raw session on behalf of a user; it asks an
AccessPolicy for a session scoped to the acting user. The host application plugs in
its row-level authorization here.
"""

from abc import ABC, abstractmethod

from sqlalchemy.orm import Session

from issue_sync.models.unified_models import User


class AccessPolicy(ABC):
    """Builds a policy-enforcing data-access handle from {raw session, acting user}."""

    @abstractmethod
    def scope(self, session: Session, user: User) -> Session:
        """Returns a drop-in replacement for `session` with authorization applied."""
        pass


class PermissiveAccessPolicy(AccessPolicy):
    """No row-level restrictions; the raw session is returned unchanged."""

    def scope(self, session: Session, user: User) -> Session:
        return session
