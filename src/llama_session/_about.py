"""Package version information."""

__version__ = "0.4.0"
__edition__ = "universal"
