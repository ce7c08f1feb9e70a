"""avalanched: per-node bootstrap agent for anchor/non-anchor validator fleets."""

__version__ = "0.1.0"
