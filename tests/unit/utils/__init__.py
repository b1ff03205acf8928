"""Unit tests for tdd_orchestrator.utils."""
