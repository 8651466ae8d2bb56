"""Connectivity signal consumed by the offline cache."""
