"""Task queue: persistent store, lifecycle and runners."""
