"""Streaming ingestion and chunked retrieval for WBS cost-estimation workbooks."""

__version__ = "0.1.0"
