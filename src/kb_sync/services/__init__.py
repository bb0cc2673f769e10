"""Long-running services: orchestration, job status, scheduling, and the index boundary."""
