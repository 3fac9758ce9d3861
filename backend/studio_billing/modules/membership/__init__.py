"""Membership plans and students."""
