"""Infrastructure Layer — storage backends, provider and sandbox clients, logging.

Invariants:
    - Infrastructure may import core/ types and errors, never services/ or api/
    - All external calls wrapped with retry/timeout/error mapping

Design Decisions:
    - Resilient wrappers over raw clients (ADR: single responsibility)
"""
