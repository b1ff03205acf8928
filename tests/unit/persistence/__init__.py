"""Unit tests for tdd_orchestrator.persistence."""
