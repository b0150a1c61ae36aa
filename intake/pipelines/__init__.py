"""Batch pipelines for runlist ingestion, enrichment and matching.

Each step is callable on its own so the HTTP surface can expose
normalization and decoding independently of a full upload.
"""
