"""HTTP layer (FastAPI): retrieval endpoints, ingest submission and signed blob reads."""
