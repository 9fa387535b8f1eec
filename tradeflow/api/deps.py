"""Shared API dependencies."""

from tradeflow.engine.registry import SessionRegistry, registry


def get_registry() -> SessionRegistry:
    """The process-wide session registry; overridden in tests."""
    return registry
