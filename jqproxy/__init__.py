"""J-Quants proxy: credentials, caching and screening in front of the J-Quants API.

This package provides:
- Two-stage token management (refresh token -> idToken) with deduplicated refreshes
- An async HTTP client with retries, a shared concurrency limit and pagination
- Field normalization for the provider's drifting JSON schemas
- Liquidity / momentum / valuation metrics and a budgeted screening pipeline
- A FastAPI routing layer suitable for serverless deployment
"""

__version__ = "1.2.0"

__all__ = [
    "api",
    "auth",
    "cache",
    "client",
    "config",
    "context",
    "market",
    "metrics",
    "normalize",
    "portfolio",
    "screening",
]
