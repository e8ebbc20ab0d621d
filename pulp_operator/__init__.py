"""Pulp operator: declarative reconciliation of a Pulp deployment descriptor."""
