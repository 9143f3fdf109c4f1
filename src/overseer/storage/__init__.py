"""SQLite persistence for the orchestration core."""
