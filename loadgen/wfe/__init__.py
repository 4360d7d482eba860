"""
Load generator for the ACME web front end (WFE).

This package drives weighted, rate-controlled registration, authorization,
issuance and revocation traffic against an ACME API, sharing a nonce pool and
a growing set of simulated accounts between concurrently running calls.
"""

from .config import LoadConfig
from .errors import LoadGeneratorError

__all__ = ["LoadConfig", "LoadGeneratorError"]
