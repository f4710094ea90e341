"""Rule engine: registry and concurrent rule evaluation."""
