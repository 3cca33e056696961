"""RateWarden: adaptive rate limiting and abuse mitigation for FastAPI services."""

__version__ = "0.1.0"
