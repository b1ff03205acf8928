"""Unit tests for tdd_orchestrator.workspace."""
