"""Domain Event definitions.

Represents significant occurrences within the data-access layer (retries,
circuit trips, evictions, rollbacks) that other parts of the system might
react to.
"""
