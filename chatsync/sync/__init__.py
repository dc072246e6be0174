"""Reconciliation, read tracking, indexing and viewport logic."""
