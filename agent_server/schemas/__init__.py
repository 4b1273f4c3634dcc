"""Pydantic Schemas — request validation for API endpoints.

Invariants:
    - Schemas validate at system boundary (user input)
    - Responses are record to_dict() payloads (camelCase), matching persisted events

Design Decisions:
    - Separate from models and records: schemas are API contracts, models are
      persistence, records are what DAOs exchange (ADR: DDD boundary)
"""
