"""HTTP API for the payment reconciliation engine."""
