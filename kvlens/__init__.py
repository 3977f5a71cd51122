"""kvlens - terminal explorer and console for Redis-compatible key-value stores."""

__version__ = "0.3.0"
