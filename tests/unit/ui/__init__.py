"""Unit tests for tdd_orchestrator.ui."""
