"""ARQ background jobs."""
