"""Matching and reconciliation engine."""
