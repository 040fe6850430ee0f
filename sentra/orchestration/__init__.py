"""
Orchestration Package

Core coordination components:
- Dispatcher: worker selection and the priority queue
- Resource ledger: per-worker budget windows with eviction
- Approval gate: risk scoring and human authorization
- Execution pipeline and the runtime that wires them together

Modules are imported directly (``from sentra.orchestration.ledger import ResourceLedger``)
so that services and agents can depend on the leaf modules without import cycles.
"""
