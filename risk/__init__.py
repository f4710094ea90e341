"""Resource-group hierarchy and risk classification."""
