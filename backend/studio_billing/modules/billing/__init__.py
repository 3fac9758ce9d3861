"""Billing core: processor client, subscriptions, webhooks and metrics."""
