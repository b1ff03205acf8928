"""Unit tests for tdd_orchestrator.supervision."""
