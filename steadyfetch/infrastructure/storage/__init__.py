"""Key-value stores backing the session and durable cache tiers."""
