"""Replisync — offline-first replica synchronisation.

Replicas exchange an append-only log of row-level changes, apply them
idempotently with dependency-violation retry, and resolve concurrent
edits deterministically.
"""

__version__ = "0.1.0"
