"""
fleetstate — domain layer.

File: src/fleetstate/domain/__init__.py

Purpose
- Resource models, per-kind state sets, ID generation and write guards.

Non-functional requirements
- Domain layer stays free of IO side effects and third-party dependencies.
"""
