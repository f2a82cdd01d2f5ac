"""Snapshot ingestion, materialization, confirmation and reconciliation."""
