"""Trust and sybil defense service."""

__version__ = "0.1.0"
