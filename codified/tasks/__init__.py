"""Background merge scheduling and repair jobs."""
