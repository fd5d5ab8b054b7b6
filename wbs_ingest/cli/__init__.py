"""Command line interface (``python -m wbs_ingest.cli``)."""
