"""mediaflow — generation workflow worker (FastAPI)."""

__version__ = "0.1.0"
