"""Durable, event-driven execution.

This package introduces first-class types for:
- Execution events (the append-only queue of a run)
- The persisted run state and its state machine
- Event/state stores (in-memory and SQLite)
- Edge-resolution policies (what runs next)
- The resumable driver loop

The intent is to make long-running execution restartable, inspectable, and
deterministic in its control flow.
"""

__all__: list[str] = []
