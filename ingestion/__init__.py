"""
Ingestion — the synchronous edge of the pipeline.
"""
from ingestion.gate import IngestionGate, IngestionReceipt, new_correlation_id

__all__ = ["IngestionGate", "IngestionReceipt", "new_correlation_id"]
