"""
Authoritative side of combat-keeper: the record store, the mutator that
executes remote functions, idempotency and rate limiting, and the HTTP app.
"""

from .app import CombatServer, create_app
from .idempotency import IdempotencyRegistry
from .mutator import CombatMutator
from .rate_limit import RateLimiter
from .store import CombatStore, Transaction

__all__ = [
    "CombatServer",
    "create_app",
    "IdempotencyRegistry",
    "CombatMutator",
    "RateLimiter",
    "CombatStore",
    "Transaction",
]
