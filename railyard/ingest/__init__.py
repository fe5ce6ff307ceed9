"""Ingestion paths: ledger, upsert, pipeline, CSV batches."""
