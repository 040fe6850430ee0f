"""Sentra - budget-aware task dispatch with human approval gating."""

__version__ = "0.1.0"
