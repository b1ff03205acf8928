"""Unit tests for tdd_orchestrator.observability."""
