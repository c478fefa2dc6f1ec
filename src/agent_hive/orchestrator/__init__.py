"""Agent registry, task queue, verification and consensus services."""
