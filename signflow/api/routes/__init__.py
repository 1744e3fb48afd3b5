from . import health, jobs, requests, signers

__all__ = [
    "health",
    "jobs",
    "requests",
    "signers",
]
