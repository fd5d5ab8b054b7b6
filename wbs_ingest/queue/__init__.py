"""Task-queue adapter (rq + redis) for ingestion jobs."""
