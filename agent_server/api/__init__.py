"""API Layer — FastAPI routes, runtime dependencies, and error handlers.

Invariants:
    - Routes registered explicitly in main.py (no auto-discovery)
    - All endpoints return structured JSON responses, except the SSE query stream

Design Decisions:
    - Thin routes delegate to services (ADR: impureim sandwich)
"""
