"""Real-time delivery feed over Redis pub/sub."""
