"""Model adapters and the capability registry."""
