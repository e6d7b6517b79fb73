"""drydock - autonomous issue scheduling and fleet capacity allocation.

A per-repository daemon turns labeled tracker issues into supervised jobs,
and a fleet layer spreads a fixed worker budget across repositories and
machines according to demand.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
