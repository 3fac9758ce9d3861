"""Tenant payment accounts and billing settings."""
