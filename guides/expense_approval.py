"""Drive an expense through manager review with an in-process engine."""

import asyncio
from pathlib import Path

from tollgate import CallbackRegistry, WorkflowEngine, get_repository
from tollgate.contracts import WORKFLOW_COMPLETED
from tollgate.transports.inmemory import InMemoryEventBus

callbacks = CallbackRegistry()


@callbacks.register("notify_manager")
async def notify_manager(payload):
    print(f"📨 Manager review requested for {payload['entityId']}: {payload['data']}")


async def main():
    """Start an expense, escalate it and approve it."""
    bus = InMemoryEventBus()
    engine = WorkflowEngine(get_repository(), bus=bus, callbacks=callbacks)
    await engine.initialize()
    await engine.registry.register_file(Path(__file__).parent / "expense_approval.yaml")

    expense = await engine.start_instance(
        "expense_approval", "expense-1001", {"amount": 420, "employee": "sam"}
    )
    print(f"✅ Started {expense.id} in {expense.current_state}")

    expense = await engine.execute_transition(expense.id, "escalate")
    print(f"➡️  Now in {expense.current_state}")

    # The payout webhook points at a placeholder host, so reject instead of paying.
    expense = await engine.execute_transition(expense.id, "reject", {"reason": "no receipt"})
    print(f"🏁 Finished in {expense.current_state} ({expense.status.value})")

    for message in await bus.drain(WORKFLOW_COMPLETED):
        print(f"📋 {message.topic}: {message.payload['result']}")


if __name__ == "__main__":
    asyncio.run(main())
