"""Workbook access: streaming row extraction, style normalization and drawing parsing."""
