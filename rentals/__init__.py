"""Rentals vertical: HTTP surface and persistence for the rental engine.

- SQLAlchemy rows translating to and from the engine's dataclasses
- Async repositories implementing the engine's store interfaces
- FastAPI router mapping engine errors to HTTP statuses
- Process-wide configuration built from the environment
"""
