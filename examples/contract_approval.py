#!/usr/bin/env python3
"""
Example: Contract approval with SLA escalation

Walks one contract through the standard approval workflow on in-memory
storage, then lets a second contract miss its review deadline so the SLA
monitor escalates it.
"""

import os
import sys
from datetime import datetime, timezone, timedelta

# Add the docflow package to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from docflow.config import DocflowConfig
from docflow.definitions import seed_contract_approval
from docflow.identity import Actor, DocumentRef
from docflow.system import WorkflowSystem


def main():
    print("📄 Docflow - Contract Approval Example")
    print("=" * 60)

    # 1. System setup
    print("\n1. 🔧 System Setup")
    system = WorkflowSystem(DocflowConfig(storage_backend="memory", notification_channels=["in_app"]))
    definition = seed_contract_approval(system.definitions)
    print(f"   Definition: {definition.name} v{definition.version}")
    print(f"   States: {', '.join(definition.states)}")

    author = system.directory.register_user(
        Actor(id="emma", full_name="Emma Employee", organization_id="ACME", roles={"employee"})
    )
    lawyer = system.directory.register_user(
        Actor(id="larry", full_name="Larry Lawyer", organization_id="ACME", roles={"legal"})
    )
    system.directory.register_user(
        Actor(id="maria", full_name="Maria Manager", organization_id="ACME", roles={"manager"})
    )

    # 2. Happy path
    print("\n2. ✅ Approval Path")
    as_author = system.for_user(author)
    as_lawyer = system.for_user(lawyer)

    contract = as_author.start_workflow("contract_approval", DocumentRef("DOC-1", "ACME", "Supplier agreement"))
    print(f"   Started instance {contract.id[:8]} in state '{contract.current_state}'")

    as_author.claim_task(system.engine.current_task(contract.id))
    as_author.perform_action(contract, "submit_for_review", "Ready for legal")
    print(f"   Submitted, now in '{as_author.find_instance(contract).current_state}'")

    review = as_lawyer.my_tasks()[0]
    as_lawyer.claim_task(review)
    print(f"   {lawyer.full_name} claimed review task (due {review.time_remaining_text()})")

    contract = as_lawyer.perform_action(contract, "approve", "Terms acceptable")
    print(f"   Final state: {contract.current_state} ({contract.status.value})")
    for entry in contract.history:
        print(f"     {entry.from_state} -> {entry.to_state} by {entry.actor_name} ({entry.action})")

    # 3. Missed deadline
    print("\n3. ⏰ SLA Breach")
    late = as_author.start_workflow("contract_approval", DocumentRef("DOC-2", "ACME", "NDA"))
    as_author.perform_action(late, "submit_for_review")
    task = system.engine.current_task(late.id)

    after_deadline = task.due_at + timedelta(minutes=5)
    results = system.scheduler.run_due(after_deadline)
    print(f"   Scheduler run at {after_deadline.isoformat()}: {results}")
    delivered = system.scheduler.run_due()
    print(f"   Queued notifications delivered: {delivered['succeeded']}")

    task = system.task_manager.get_task(task.id)
    print(f"   Task status: {task.status.value}, escalation level {task.escalation_level}")
    for notification in system.notification_center.get_notifications("maria"):
        print(f"   📬 maria: {notification.subject}")

    # 4. Dashboard numbers
    print("\n4. 📊 Statistics")
    for name, value in as_author.statistics(datetime.now(timezone.utc)).items():
        print(f"   {name}: {value}")

    integrity = system.audit_trail.verify_integrity()
    print(f"\n🔒 Audit chain valid: {integrity['valid']} ({integrity['total_events']} events)")

    system.close()


if __name__ == "__main__":
    main()
