"""Tenant notification collaborator."""
