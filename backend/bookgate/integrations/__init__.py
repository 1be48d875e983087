"""External service integrations (payment provider, content catalog)."""
