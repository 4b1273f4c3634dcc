"""Engines Layer — tool-call dialects that turn model streams into content, reasoning, and calls.

Invariants:
    - Engines never perform IO; they only transform chunks and shape requests
    - Every engine is chosen through factory.create_tool_call_engine()

Design Decisions:
    - One module per dialect, shared helpers in base.py (ADR: no inheritance hierarchy)
"""
