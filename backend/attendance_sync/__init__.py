"""Biometric terminal log ingestion and attendance reconciliation."""

__version__ = "1.0.0"
