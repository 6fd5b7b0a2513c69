"""Redis Streams consumers for queued governance jobs."""
