"""Studio billing and subscription reconciliation service."""
