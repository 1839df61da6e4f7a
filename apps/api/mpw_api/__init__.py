"""MercadoPago webhook reliability pipeline: HTTP API and shared core."""

__version__ = "0.1.0"
