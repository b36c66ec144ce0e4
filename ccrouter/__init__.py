"""Local proxy that routes chat requests to configured model providers."""

__version__ = "0.1.0"
