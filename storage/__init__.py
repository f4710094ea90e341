"""Storage backends implementing contracts.interfaces.Storage."""
