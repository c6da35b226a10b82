"""
Workflow Definition Module

Versioned workflow templates: the states a document moves through, the
allowed transitions between them and the per-state step configuration
(assigned role, SLA hours). Definitions are validated when saved and are
never edited after activation; changes produce a new version.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
import json
import logging
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from .audit import AuditTrail, AuditEventType, AuditAction
from .errors import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepConfig:
    """Configuration for the task created when an instance enters a state"""
    assigned_role: Optional[str] = None
    sla_hours: Optional[int] = None  # None falls back to the definition default
    description: str = ""


@dataclass(frozen=True)
class Transition:
    """Allowed edge between two states, optionally named by an action"""
    from_state: str
    to_state: str
    action: Optional[str] = None


@dataclass
class WorkflowDefinition(StorageRecord):
    """Workflow definition (template)"""
    name: str
    initial_state: str
    states: List[str]
    final_states: List[str]
    transitions: List[Transition]
    steps: Dict[str, StepConfig] = field(default_factory=dict)
    default_sla_hours: Optional[int] = 24
    version: int = 1
    is_active: bool = True
    description: str = ""
    document_type: Optional[str] = None
    organization_id: Optional[str] = None
    created_by: str = ""
    previous_version_id: Optional[str] = None

    def transition_allowed(self, from_state: str, to_state: str) -> bool:
        return any(t.from_state == from_state and t.to_state == to_state for t in self.transitions)

    def transitions_from(self, from_state: str) -> List[Transition]:
        return [t for t in self.transitions if t.from_state == from_state]

    def available_transitions(self, from_state: str) -> List[str]:
        """Target states reachable from from_state, in definition order"""
        return [t.to_state for t in self.transitions_from(from_state)]

    def step_for(self, state: str) -> StepConfig:
        return self.steps.get(state) or StepConfig()

    def assigned_role_for(self, state: str) -> Optional[str]:
        return self.step_for(state).assigned_role

    def sla_hours_for(self, state: str) -> Optional[int]:
        sla_hours = self.step_for(state).sla_hours
        return sla_hours if sla_hours is not None else self.default_sla_hours

    def is_final(self, state: str) -> bool:
        return state in self.final_states

    def action_for(self, from_state: str, to_state: str) -> Optional[str]:
        """Action name of the first matching edge"""
        for t in self.transitions:
            if t.from_state == from_state and t.to_state == to_state:
                return t.action
        return None

    def target_for_action(self, from_state: str, action: str) -> Optional[str]:
        """Target state of the first edge from from_state named action"""
        for t in self.transitions:
            if t.from_state == from_state and t.action == action:
                return t.to_state
        return None

    def validate(self) -> List[str]:
        """Return every configuration problem; an empty list means valid"""
        errors = []
        if not self.name:
            errors.append("name is required")
        if not self.states:
            errors.append("states must not be empty")
        if len(set(self.states)) != len(self.states):
            errors.append("states must be unique")
        if not self.initial_state:
            errors.append("initial_state is required")
        elif self.initial_state not in self.states:
            errors.append("initial_state must be one of the defined states")

        invalid_finals = [s for s in self.final_states if s not in self.states]
        if invalid_finals:
            errors.append(f"final_states contains invalid states: {', '.join(invalid_finals)}")

        for t in self.transitions:
            if not t.from_state or not t.to_state:
                errors.append("transitions must have 'from' and 'to' states")
                continue
            if t.from_state not in self.states or t.to_state not in self.states:
                errors.append(f"transition contains invalid states: {t.from_state} -> {t.to_state}")

        for state, step in self.steps.items():
            if state not in self.states:
                errors.append(f"step configured for unknown state: {state}")
            if step.sla_hours is not None and step.sla_hours < 0:
                errors.append(f"sla_hours for {state} must not be negative")

        if self.default_sla_hours is not None and self.default_sla_hours < 0:
            errors.append("default_sla_hours must not be negative")
        if self.version < 1:
            errors.append("version must be at least 1")

        return errors

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        data = dict(data)
        data['transitions'] = [Transition(**t) for t in data.get('transitions', [])]
        data['steps'] = {state: StepConfig(**step) for state, step in data.get('steps', {}).items()}
        return super().from_dict(data)


class TransitionModel(BaseModel):
    """Transition entry of a definition document"""
    model_config = ConfigDict(populate_by_name=True)

    from_state: str = Field(..., alias="from")
    to_state: str = Field(..., alias="to")
    action: Optional[str] = None


class StepModel(BaseModel):
    assigned_role: Optional[str] = None
    sla_hours: Optional[int] = Field(None, description="Hours allowed; omitted uses the default")
    description: str = ""


class DefinitionDocument(BaseModel):
    """JSON/dict representation of a workflow definition"""
    name: str
    description: str = ""
    version: int = 1
    document_type: Optional[str] = None
    organization_id: Optional[str] = None
    initial_state: str
    states: List[str]
    final_states: List[str] = []
    transitions: List[TransitionModel] = []
    steps: Dict[str, StepModel] = {}
    default_sla_hours: Optional[int] = 24

    def to_definition(self, created_by: str = "") -> WorkflowDefinition:
        now = datetime.now(timezone.utc)
        return WorkflowDefinition(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=self.name,
            description=self.description,
            version=self.version,
            document_type=self.document_type,
            organization_id=self.organization_id,
            initial_state=self.initial_state,
            states=list(self.states),
            final_states=list(self.final_states),
            transitions=[Transition(t.from_state, t.to_state, t.action) for t in self.transitions],
            steps={
                state: StepConfig(step.assigned_role, step.sla_hours, step.description)
                for state, step in self.steps.items()
            },
            default_sla_hours=self.default_sla_hours,
            created_by=created_by
        )


def parse_definition_document(raw: Dict[str, Any]) -> DefinitionDocument:
    """Parse a definition document, reporting schema problems as ValidationError"""
    try:
        return DefinitionDocument.model_validate(raw)
    except SchemaError as e:
        raise ValidationError([
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]) from e


CONTRACT_APPROVAL = {
    "name": "contract_approval",
    "description": "Standard contract approval workflow with legal review",
    "document_type": "contract",
    "initial_state": "draft",
    "states": ["draft", "legal_review", "approved", "rejected"],
    "final_states": ["approved", "rejected"],
    "transitions": [
        {"from": "draft", "to": "legal_review", "action": "submit_for_review"},
        {"from": "legal_review", "to": "approved", "action": "approve"},
        {"from": "legal_review", "to": "rejected", "action": "reject"},
        {"from": "legal_review", "to": "draft", "action": "request_changes"}
    ],
    "steps": {
        "draft": {"assigned_role": "employee", "description": "Initial draft creation"},
        "legal_review": {"assigned_role": "legal", "sla_hours": 48,
                         "description": "Legal team review and approval"},
        "approved": {"description": "Contract approved"},
        "rejected": {"description": "Contract rejected"}
    },
    "default_sla_hours": 24
}


class DefinitionStore:
    """Persistence and lookup of workflow definitions"""

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 default_sla_hours: Optional[int] = 24):
        self.storage = storage
        self.audit = audit_manager or AuditTrail(storage)
        self.table = "workflow_definitions"
        self.default_sla_hours = default_sla_hours

    def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Validate and save a new definition.

        Raises:
            ValidationError: listing every configuration problem, including a
                clash with an existing (name, version) pair
        """
        if not definition.id:
            definition.id = str(uuid.uuid4())
        definition.created_at = datetime.now(timezone.utc)
        definition.updated_at = definition.created_at

        errors = definition.validate()
        if self.has_version(definition.name, definition.version, definition.organization_id):
            errors.append(f"version {definition.version} of '{definition.name}' already exists")
        if errors:
            raise ValidationError(errors)

        self.storage.save(self.table, definition.id, definition.to_dict())

        self.audit.record(
            AuditEventType.WORKFLOW, AuditAction.DEFINITION_CREATED,
            'workflow_definition', definition.id,
            {'name': definition.name, 'version': definition.version},
            definition.created_by or None, definition.organization_id
        )
        logger.info(f"Created workflow definition {definition.name} v{definition.version}")

        return definition

    def create_from_document(self, document: Union[DefinitionDocument, Dict[str, Any]],
                             created_by: str = "") -> WorkflowDefinition:
        """Parse a definition document and save it"""
        if not isinstance(document, DefinitionDocument):
            document = parse_definition_document(document)
        if "default_sla_hours" not in document.model_fields_set:
            document = document.model_copy(update={"default_sla_hours": self.default_sla_hours})
        return self.create_definition(document.to_definition(created_by))

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Get a workflow definition by ID"""
        data = self.storage.load(self.table, definition_id)
        if not data:
            return None
        return WorkflowDefinition.from_dict(data)

    def require_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = self.get_definition(definition_id)
        if not definition:
            raise NotFoundError('workflow_definition', definition_id)
        return definition

    def find_latest(self, name: str, organization_id: Optional[str] = None) -> Optional[WorkflowDefinition]:
        """
        Highest active version of a named definition.

        Organization-specific definitions take precedence over shared ones
        (those without an organization).
        """
        candidates = [
            d for d in self._by_name(name)
            if d.is_active and d.organization_id in (organization_id, None)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda d: (d.organization_id is not None, d.version))

    def list_definitions(self, document_type: Optional[str] = None,
                         active_only: bool = False) -> List[WorkflowDefinition]:
        """List definitions sorted by name and version"""
        definitions = [WorkflowDefinition.from_dict(data) for data in self.storage.load_all(self.table)]
        if document_type:
            definitions = [d for d in definitions if d.document_type == document_type]
        if active_only:
            definitions = [d for d in definitions if d.is_active]
        return sorted(definitions, key=lambda d: (d.name, d.version))

    def new_version(self, definition_id: str, created_by: str = "", **changes) -> WorkflowDefinition:
        """
        Copy a definition into a new version and deactivate the predecessor.

        Args:
            definition_id: Definition to copy
            created_by: Author of the new version
            **changes: Field overrides for the copy (states, transitions, steps...)

        Returns:
            The new, active definition
        """
        current = self.require_definition(definition_id)
        now = datetime.now(timezone.utc)
        latest_version = max(d.version for d in self._by_name(current.name)
                             if d.organization_id == current.organization_id)

        successor = replace(
            current,
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            version=latest_version + 1,
            is_active=True,
            created_by=created_by or current.created_by,
            previous_version_id=current.id,
            **changes
        )

        errors = successor.validate()
        if errors:
            raise ValidationError(errors)

        with self.storage.atomic():
            self.storage.save(self.table, successor.id, successor.to_dict())
            self._set_active(current, False)

            self.audit.record(
                AuditEventType.WORKFLOW, AuditAction.DEFINITION_VERSIONED,
                'workflow_definition', successor.id,
                {'name': successor.name, 'version': successor.version,
                 'previous_version_id': current.id},
                created_by or None, successor.organization_id
            )

        logger.info(f"Created workflow definition {successor.name} v{successor.version}")
        return successor

    def deactivate(self, definition_id: str) -> WorkflowDefinition:
        """Deactivate a definition; running instances keep using it"""
        definition = self.require_definition(definition_id)
        if definition.is_active:
            self._set_active(definition, False)
            self.audit.record(
                AuditEventType.WORKFLOW, AuditAction.DEFINITION_DEACTIVATED,
                'workflow_definition', definition.id,
                {'name': definition.name, 'version': definition.version},
                organization_id=definition.organization_id
            )
        return definition

    def _set_active(self, definition: WorkflowDefinition, active: bool) -> None:
        definition.is_active = active
        definition.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table, definition.id, definition.to_dict())

    def _by_name(self, name: str) -> List[WorkflowDefinition]:
        return [WorkflowDefinition.from_dict(data) for data in self.storage.find(self.table, {'name': name})]

    def has_version(self, name: str, version: int, organization_id: Optional[str] = None) -> bool:
        """Whether (name, version) exists within the organization (or among shared definitions)"""
        return bool(self.storage.find(self.table, {'name': name, 'version': version,
                                                   'organization_id': organization_id}))


def load_definitions(store: DefinitionStore,
                     source: Union[str, Path, Iterable[Dict[str, Any]]],
                     created_by: str = "system") -> List[WorkflowDefinition]:
    """
    Seed a store from definition documents.

    Args:
        store: Target definition store
        source: Path to a JSON file (one document or a list) or an iterable of dicts
        created_by: Author recorded on each definition

    Returns:
        The definitions created; documents whose (name, version) already
        exists are skipped
    """
    if isinstance(source, (str, Path)):
        with open(source, "r", encoding="utf-8") as handle:
            loaded = json.load(handle)
        documents = loaded if isinstance(loaded, list) else [loaded]
    else:
        documents = list(source)

    created = []
    for raw in documents:
        document = parse_definition_document(raw)
        if store.has_version(document.name, document.version, document.organization_id):
            logger.debug(f"Skipping existing definition {document.name} v{document.version}")
            continue
        created.append(store.create_from_document(document, created_by))
    return created


def seed_contract_approval(store: DefinitionStore,
                           organization_id: Optional[str] = None) -> WorkflowDefinition:
    """Install the standard contract approval workflow if it is missing"""
    existing = store.find_latest(CONTRACT_APPROVAL["name"], organization_id)
    if existing and existing.organization_id == organization_id:
        return existing

    document = parse_definition_document(dict(CONTRACT_APPROVAL, organization_id=organization_id))
    return store.create_from_document(document, created_by="system")
