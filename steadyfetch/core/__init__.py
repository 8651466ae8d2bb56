"""Core application layer: composition root, services and command handling."""
