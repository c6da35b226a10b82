"""
Identity Module

Actors, document references and the role directory used to resolve who may
work a task and who receives workflow notifications.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Any
import logging

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType, AuditAction


logger = logging.getLogger(__name__)


@dataclass
class Actor:
    """
    A user (or system process) acting on workflows.

    Any object exposing ``id`` and ``has_role(name)`` can stand in for an
    Actor; the engine never inspects roles any other way.
    """
    id: str
    full_name: str = ""
    email: Optional[str] = None
    organization_id: Optional[str] = None
    roles: Set[str] = field(default_factory=set)
    is_active: bool = True

    def has_role(self, role: str) -> bool:
        """Check if actor holds the named role"""
        return role in self.roles

    @property
    def display_name(self) -> str:
        return self.full_name or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'full_name': self.full_name,
            'email': self.email,
            'organization_id': self.organization_id,
            'roles': sorted(self.roles),
            'is_active': self.is_active
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Actor':
        return cls(
            id=data['id'],
            full_name=data.get('full_name', ""),
            email=data.get('email'),
            organization_id=data.get('organization_id'),
            roles=set(data.get('roles', [])),
            is_active=data.get('is_active', True)
        )


SYSTEM_ACTOR = Actor(id="system", full_name="System")


@dataclass(frozen=True)
class DocumentRef:
    """Reference to the document a workflow instance drives"""
    id: str
    organization_id: Optional[str] = None
    title: str = ""


class RoleDirectory(ABC):
    """Lookup of users and role membership within organizations"""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[Actor]:
        """Get a user by ID"""
        pass

    @abstractmethod
    def users_with_role(self, organization_id: Optional[str], role: str) -> List[Actor]:
        """Active users in the organization holding the role"""
        pass

    def user_has_role(self, user_id: str, role: str) -> bool:
        """Check if the user holds the role"""
        user = self.get_user(user_id)
        return bool(user and user.has_role(role))


class StorageRoleDirectory(RoleDirectory):
    """Role directory persisted in the workflow storage backend"""

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit = audit_manager
        self.table = "workflow_users"

    def register_user(self, actor: Actor) -> Actor:
        """Add or replace a user"""
        self.storage.save(self.table, actor.id, actor.to_dict())
        if self.audit:
            self.audit.record(
                AuditEventType.IDENTITY, AuditAction.USER_REGISTERED, 'user', actor.id,
                {'roles': sorted(actor.roles)}, organization_id=actor.organization_id
            )
        return actor

    def get_user(self, user_id: str) -> Optional[Actor]:
        data = self.storage.load(self.table, user_id)
        if not data:
            return None
        return Actor.from_dict(data)

    def list_users(self, organization_id: Optional[str] = None) -> List[Actor]:
        """List users, optionally scoped to one organization"""
        filters = {'organization_id': organization_id} if organization_id else {}
        users = [Actor.from_dict(data) for data in self.storage.find(self.table, filters)]
        return sorted(users, key=lambda u: u.id)

    def grant_role(self, user_id: str, role: str) -> bool:
        """Grant a role to a user"""
        return self._change_role(user_id, role, grant=True)

    def revoke_role(self, user_id: str, role: str) -> bool:
        """Revoke a role from a user"""
        return self._change_role(user_id, role, grant=False)

    def _change_role(self, user_id: str, role: str, grant: bool) -> bool:
        user = self.get_user(user_id)
        if not user:
            return False

        if grant:
            user.roles.add(role)
        else:
            user.roles.discard(role)
        self.storage.save(self.table, user.id, user.to_dict())

        if self.audit:
            self.audit.record(
                AuditEventType.IDENTITY,
                AuditAction.ROLE_GRANTED if grant else AuditAction.ROLE_REVOKED,
                'user', user.id, {'role': role, 'at': datetime.now(timezone.utc)},
                organization_id=user.organization_id
            )
        return True

    def users_with_role(self, organization_id: Optional[str], role: str) -> List[Actor]:
        return [
            user for user in self.list_users(organization_id)
            if user.is_active and user.has_role(role)
        ]
