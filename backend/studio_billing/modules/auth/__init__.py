"""Bearer-token authentication for tenant-scoped routes."""
