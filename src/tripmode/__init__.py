"""Active-travel mode choice of young adults from household travel survey trips."""

__version__ = "0.1.0"
