"""Test suite for tdd-orchestrator."""
