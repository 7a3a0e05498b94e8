"""
Bulk import pipeline: streaming parsers, staging tables, set-based validation,
atomic upsert, and a bounded job queue with push-based progress.
"""

__version__ = "1.0.0"
