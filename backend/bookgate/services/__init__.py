"""Entitlement services: resolution, allocation, reconciliation, checkout."""
