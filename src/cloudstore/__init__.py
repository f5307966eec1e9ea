"""Multi-cloud object storage with concurrent chunked transfers."""

__version__ = '0.1.0'
