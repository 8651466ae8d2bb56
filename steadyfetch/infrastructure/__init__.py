"""Infrastructure Layer: Concrete implementations of domain interfaces.

Contains adapters for storage backends, caching, resilience, configuration,
connectivity and console presentation.
"""
