"""Console presentation for the administration CLI."""
