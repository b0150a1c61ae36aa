"""Backend package: DB models, pipelines, APIs.

This package orchestrates runlist ingestion: parsing, column mapping,
registry enrichment, persistence, alias normalization and buy box
matching with inspection generation.
"""
