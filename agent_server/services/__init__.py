"""Services Layer — agent loop, sessions, pooling, admission control, and sandbox scheduling.

Invariants:
    - Services depend on core/ and on Protocols, never on concrete storage backends
    - Tools are registered explicitly in a ToolRegistry (no auto-discovery)

Design Decisions:
    - One file per concern for locality (ADR: no god objects)
"""
