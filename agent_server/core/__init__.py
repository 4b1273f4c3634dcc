"""Core Layer — pure domain types, records, errors, and the tag scanner.

Invariants:
    - No module in core/ imports from services/, api/, infrastructure/, or db/
    - No IO and no async: everything here is deterministic and unit-testable

Design Decisions:
    - Functional core separated from imperative shell (ADR: impureim sandwich)
"""
