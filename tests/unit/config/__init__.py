"""Unit tests for tdd_orchestrator.config."""
