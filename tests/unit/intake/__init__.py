"""Unit tests for tdd_orchestrator.intake."""
