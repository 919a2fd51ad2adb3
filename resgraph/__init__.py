"""resgraph: a lazily computed, cached resource graph over infrastructure targets."""

__version__ = "0.3.0"
