"""
Test suite for workflow definition module

Tests definition validation, step configuration lookups, versioning,
definition documents and seeding.
"""

import json
import pytest

from docflow.storage import InMemoryStorage
from docflow.audit import AuditTrail, AuditAction
from docflow.errors import NotFoundError, ValidationError
from docflow.definitions import (
    CONTRACT_APPROVAL, DefinitionStore, StepConfig, Transition, WorkflowDefinition,
    load_definitions, parse_definition_document, seed_contract_approval
)


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_manager(storage):
    return AuditTrail(storage)


@pytest.fixture
def store(storage, audit_manager):
    """Create definition store for testing"""
    return DefinitionStore(storage, audit_manager)


@pytest.fixture
def contract_definition(store):
    """Standard contract approval definition"""
    return seed_contract_approval(store)


def make_definition(**overrides):
    fields = dict(
        id="",
        created_at=None,
        updated_at=None,
        name="invoice_approval",
        initial_state="submitted",
        states=["submitted", "approved", "rejected"],
        final_states=["approved", "rejected"],
        transitions=[
            Transition("submitted", "approved", "approve"),
            Transition("submitted", "rejected", "reject")
        ],
        steps={"submitted": StepConfig("finance", 8, "Finance review")}
    )
    fields.update(overrides)
    return WorkflowDefinition(**fields)


class TestDefinitionQueries:
    """Test lookups on a definition"""

    def test_transitions(self, contract_definition):
        """Test allowed edges and action lookups"""
        assert contract_definition.transition_allowed("draft", "legal_review")
        assert not contract_definition.transition_allowed("draft", "approved")
        assert contract_definition.available_transitions("legal_review") == ["approved", "rejected", "draft"]
        assert contract_definition.action_for("legal_review", "draft") == "request_changes"
        assert contract_definition.target_for_action("legal_review", "approve") == "approved"
        assert contract_definition.target_for_action("draft", "approve") is None

    def test_step_configuration(self, contract_definition):
        """Test role and SLA lookups with default fallback"""
        assert contract_definition.assigned_role_for("draft") == "employee"
        assert contract_definition.assigned_role_for("legal_review") == "legal"
        assert contract_definition.sla_hours_for("legal_review") == 48
        assert contract_definition.sla_hours_for("draft") == 24
        assert contract_definition.step_for("unknown") == StepConfig()

    def test_final_states(self, contract_definition):
        assert contract_definition.is_final("approved")
        assert contract_definition.is_final("rejected")
        assert not contract_definition.is_final("draft")


class TestValidation:
    """Test definition validation at save time"""

    def test_valid_definition_is_saved(self, store):
        definition = store.create_definition(make_definition())

        assert definition.id
        assert store.get_definition(definition.id).name == "invoice_approval"

    def test_collects_every_problem(self, store):
        """Test all configuration errors are reported together"""
        definition = make_definition(
            initial_state="nowhere",
            final_states=["approved", "archived"],
            transitions=[Transition("submitted", "ghost", "haunt")],
            steps={"limbo": StepConfig("finance", -1)}
        )

        with pytest.raises(ValidationError) as exc_info:
            store.create_definition(definition)

        errors = exc_info.value.errors
        assert "initial_state must be one of the defined states" in errors
        assert "final_states contains invalid states: archived" in errors
        assert "transition contains invalid states: submitted -> ghost" in errors
        assert "step configured for unknown state: limbo" in errors
        assert "sla_hours for limbo must not be negative" in errors

    def test_empty_and_duplicate_states(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.create_definition(make_definition(states=[], transitions=[], steps={}))
        assert "states must not be empty" in exc_info.value.errors

        with pytest.raises(ValidationError) as exc_info:
            store.create_definition(make_definition(states=["submitted", "approved", "approved", "rejected"]))
        assert "states must be unique" in exc_info.value.errors

    def test_duplicate_name_and_version(self, store):
        store.create_definition(make_definition())

        with pytest.raises(ValidationError, match="already exists"):
            store.create_definition(make_definition())

    def test_validation_error_is_value_error(self, store):
        with pytest.raises(ValueError):
            store.create_definition(make_definition(name=""))


class TestVersioning:
    """Test versions, lookup by name and deactivation"""

    def test_new_version_deactivates_predecessor(self, store, contract_definition, audit_manager):
        successor = store.new_version(
            contract_definition.id, created_by="admin",
            steps={"legal_review": StepConfig("legal", 24, "Faster review")}
        )

        assert successor.version == 2
        assert successor.previous_version_id == contract_definition.id
        assert successor.sla_hours_for("legal_review") == 24
        assert not store.get_definition(contract_definition.id).is_active
        assert store.find_latest("contract_approval").id == successor.id
        assert audit_manager.get_events_by_action(AuditAction.DEFINITION_VERSIONED)

    def test_invalid_new_version_is_rejected(self, store, contract_definition):
        with pytest.raises(ValidationError):
            store.new_version(contract_definition.id, initial_state="missing")

        assert store.get_definition(contract_definition.id).is_active

    def test_find_latest_prefers_organization_definition(self, store, contract_definition):
        org_definition = seed_contract_approval(DefinitionStore(store.storage), organization_id="ORG1")

        assert store.find_latest("contract_approval", "ORG1").id == org_definition.id
        assert store.find_latest("contract_approval", "ORG2").id == contract_definition.id

    def test_deactivate(self, store, contract_definition):
        store.deactivate(contract_definition.id)

        assert store.find_latest("contract_approval") is None
        assert store.list_definitions(active_only=True) == []
        assert len(store.list_definitions(document_type="contract")) == 1

    def test_require_missing_definition(self, store):
        with pytest.raises(NotFoundError):
            store.require_definition("missing")


class TestDefinitionDocuments:
    """Test loading definitions from documents"""

    def test_parse_document_aliases(self):
        document = parse_definition_document(CONTRACT_APPROVAL)

        assert document.transitions[0].from_state == "draft"
        assert document.transitions[0].to_state == "legal_review"
        assert document.steps["legal_review"].sla_hours == 48

    def test_schema_errors_become_validation_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_definition_document({"name": "broken", "states": "not-a-list"})

        assert any("initial_state" in error for error in exc_info.value.errors)

    def test_store_default_sla_applies_when_omitted(self, storage):
        store = DefinitionStore(storage, default_sla_hours=12)
        raw = {key: value for key, value in CONTRACT_APPROVAL.items() if key != "default_sla_hours"}

        definition = store.create_from_document(raw)

        assert definition.sla_hours_for("draft") == 12
        assert definition.sla_hours_for("legal_review") == 48

    def test_load_definitions_from_file(self, store, tmp_path):
        path = tmp_path / "definitions.json"
        path.write_text(json.dumps([CONTRACT_APPROVAL, dict(CONTRACT_APPROVAL, version=2)]))

        created = load_definitions(store, path)
        again = load_definitions(store, path)

        assert [d.version for d in created] == [1, 2]
        assert again == []

    def test_seed_is_idempotent(self, store):
        first = seed_contract_approval(store)
        second = seed_contract_approval(store)

        assert first.id == second.id
        assert len(store.list_definitions()) == 1

    def test_definition_survives_storage(self, store, contract_definition):
        reloaded = store.get_definition(contract_definition.id)

        assert reloaded.transitions == contract_definition.transitions
        assert reloaded.steps == contract_definition.steps
        assert reloaded.final_states == ["approved", "rejected"]
