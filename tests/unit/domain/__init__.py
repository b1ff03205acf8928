"""Unit tests for tdd_orchestrator.domain."""
