"""Read-only status API for Pulp descriptors managed by the operator."""
