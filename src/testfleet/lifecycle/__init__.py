"""Primary/worker lifecycle orchestration."""
