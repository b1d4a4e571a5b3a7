"""SQLite persistence for the task queue."""
