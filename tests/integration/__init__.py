"""End-to-end tests: real driver, scheduler, state database and snapshots; scripted test output."""
