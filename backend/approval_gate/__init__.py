"""Approval gate service for critical actions."""
