"""Single-use ledger for capability-link nonces.

The ledger relies on the store's uniqueness constraint to decide who wins:
whichever insert lands first gets ``FRESH``, every other caller (concurrent
or later, any process) gets ``ALREADY_USED``. Never check-then-insert.
"""

from __future__ import annotations

import enum
import logging
from typing import Protocol

from newsletter.errors import NonceStoreError

logger = logging.getLogger(__name__)


class NonceStatus(enum.Enum):
    FRESH = "fresh"
    ALREADY_USED = "already_used"


class NonceStore(Protocol):
    def insert_nonce(self, nonce: str) -> bool:
        """Insert ``nonce``; False on a uniqueness violation.

        Any other failure raises ``NonceStoreError``.
        """
        ...


class NonceLedger:
    def __init__(self, store: NonceStore) -> None:
        self.store = store

    def consume(self, nonce: str) -> NonceStatus:
        """Record ``nonce`` as used.

        Raises:
            NonceStoreError: the store could not be reached. Callers must abort
                the action; it is neither fresh nor used.
        """
        if not nonce:
            raise ValueError("nonce required")
        try:
            inserted = self.store.insert_nonce(nonce)
        except NonceStoreError:
            logger.exception("Nonce ledger unavailable")
            raise
        if inserted:
            return NonceStatus.FRESH
        logger.info("Replay of consumed nonce %s…", nonce[:6])
        return NonceStatus.ALREADY_USED
