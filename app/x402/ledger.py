# app/x402/ledger.py
"""
Payment-intent ledger for the x402 gateway.

A payment intent records the terms a caller was asked to pay (amount, asset,
chain) under an unguessable reference token, and whether that payment has
been settled on-chain.

Lifecycle:
- created Pending when a caller first hits a protected resource
- moved to Paid exactly once, by the settlement verifier
- Paid is terminal; Pending intents expire after X402_INTENT_EXPIRY_MINUTES

Storage sits behind the IntentStore interface so that a key-value database
can replace the in-memory store. The store provides a per-reference mutex
and an atomic tx-hash claim; the ledger only ever mutates an intent while
holding that reference's lock.
"""
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from app.core.config import settings
from app.x402.audit import log_intents_swept
from app.x402.errors import (
    AlreadyPaid,
    IntentExpired,
    IntentNotFound,
    TransactionAlreadyUsed,
)

logger = logging.getLogger(__name__)

# 8 bytes of entropy -> 16 hex characters
REFERENCE_BYTES = 8
MAX_REFERENCE_ATTEMPTS = 10
# Swept references remembered so late lookups report expiry, not absence
MAX_SWEPT_REFERENCES = 10_000


class IntentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


@dataclass(frozen=True)
class PaymentIntent:
    """An expected payment and its settlement status."""
    reference: str
    amount: str
    asset: str
    chain: str
    created_at: datetime
    status: IntentStatus = IntentStatus.PENDING
    tx_hash: Optional[str] = None
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.status == IntentStatus.PAID


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_reference() -> str:
    """Generate an unguessable hex reference token."""
    return secrets.token_hex(REFERENCE_BYTES)


def normalize_tx_hash(tx_hash: str) -> str:
    return tx_hash.strip().lower()


class IntentStore(ABC):
    """
    Storage interface for payment intents.

    Implementations must make add() an insert-if-absent, claim_tx_hash() an
    atomic set-if-absent, and lock() a mutex scoped to one reference.
    """

    @abstractmethod
    def lock(self, reference: str):
        """Context manager serializing mutations of one reference."""

    @abstractmethod
    def add(self, intent: PaymentIntent) -> bool:
        """Store a new intent. Returns False if the reference already exists."""

    @abstractmethod
    def get(self, reference: str) -> Optional[PaymentIntent]:
        pass

    @abstractmethod
    def put(self, intent: PaymentIntent) -> None:
        """Replace an existing intent. Callers must hold lock(reference)."""

    @abstractmethod
    def claim_tx_hash(self, tx_hash: str, reference: str) -> bool:
        """
        Associate tx_hash with reference.

        Returns True if the hash is now (or already was) owned by reference,
        False if another reference owns it.
        """

    @abstractmethod
    def delete(self, reference: str) -> None:
        pass

    @abstractmethod
    def values(self) -> List[PaymentIntent]:
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class InMemoryIntentStore(IntentStore):
    """
    Thread-safe in-memory intent store.

    Each reference gets its own lock, so operations on different references
    never wait on each other. The registry lock only guards dict membership.
    """

    def __init__(self):
        self._intents: Dict[str, PaymentIntent] = {}
        self._tx_owners: Dict[str, str] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def lock(self, reference: str) -> Iterator[None]:
        with self._registry_lock:
            ref_lock = self._locks.get(reference)
            if ref_lock is None:
                ref_lock = self._locks[reference] = threading.Lock()
        with ref_lock:
            yield

    def add(self, intent: PaymentIntent) -> bool:
        with self._registry_lock:
            if intent.reference in self._intents:
                return False
            self._intents[intent.reference] = intent
            return True

    def get(self, reference: str) -> Optional[PaymentIntent]:
        return self._intents.get(reference)

    def put(self, intent: PaymentIntent) -> None:
        with self._registry_lock:
            if intent.reference not in self._intents:
                raise KeyError(intent.reference)
            self._intents[intent.reference] = intent

    def claim_tx_hash(self, tx_hash: str, reference: str) -> bool:
        with self._registry_lock:
            owner = self._tx_owners.setdefault(tx_hash, reference)
        return owner == reference

    def delete(self, reference: str) -> None:
        with self._registry_lock:
            self._intents.pop(reference, None)
            self._locks.pop(reference, None)

    def values(self) -> List[PaymentIntent]:
        with self._registry_lock:
            return list(self._intents.values())

    def __len__(self) -> int:
        return len(self._intents)


class IntentLedger:
    """Authoritative record of payment intents, keyed by reference."""

    def __init__(
        self,
        store: Optional[IntentStore] = None,
        expiry_minutes: Optional[int] = None,
        sweep_interval_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store if store is not None else InMemoryIntentStore()
        self._expiry_minutes = expiry_minutes
        self._sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sweep_lock = threading.Lock()
        self._last_sweep = time.monotonic()
        self._swept: "OrderedDict[str, datetime]" = OrderedDict()
        self._swept_lock = threading.Lock()

    @property
    def expiry_window(self) -> timedelta:
        minutes = self._expiry_minutes
        if minutes is None:
            minutes = settings.X402_INTENT_EXPIRY_MINUTES
        return timedelta(minutes=minutes)

    @property
    def sweep_interval_seconds(self) -> int:
        if self._sweep_interval_seconds is not None:
            return self._sweep_interval_seconds
        return settings.X402_SWEEP_INTERVAL_SECONDS

    def expires_at(self, intent: PaymentIntent) -> datetime:
        return intent.created_at + self.expiry_window

    def is_expired(self, intent: PaymentIntent) -> bool:
        """Paid intents never expire; Pending ones do once the window has passed."""
        if intent.is_paid:
            return False
        return self._clock() >= self.expires_at(intent)

    def create(
        self,
        amount: Optional[str] = None,
        asset: Optional[str] = None,
        chain: Optional[str] = None,
    ) -> str:
        """
        Issue a new Pending intent and return its reference.

        Terms default to the configured price, asset and chain.

        Raises:
            RuntimeError: If no free reference could be generated
        """
        self._maybe_sweep()

        for _ in range(MAX_REFERENCE_ATTEMPTS):
            intent = PaymentIntent(
                reference=generate_reference(),
                amount=amount or settings.X402_PRICE,
                asset=asset or settings.X402_ASSET,
                chain=chain or settings.X402_CHAIN_NAME,
                created_at=self._clock(),
            )
            if self.store.add(intent):
                logger.info(
                    f"x402: Created intent {intent.reference} "
                    f"({intent.amount} {intent.asset} on {intent.chain})"
                )
                return intent.reference
            logger.warning(f"x402: Reference collision on {intent.reference}, regenerating")

        raise RuntimeError("Could not generate a unique payment reference")

    def get(self, reference: str) -> PaymentIntent:
        """
        Raises:
            IntentNotFound: Unknown reference
            IntentExpired: The reference expired and was swept from the store
        """
        intent = self.store.get(reference)
        if intent is None:
            with self._swept_lock:
                expired_at = self._swept.get(reference)
            if expired_at is not None:
                raise IntentExpired(f"Reference {reference} expired at {expired_at.isoformat()}")
            raise IntentNotFound(f"No payment intent for reference {reference}")
        return intent

    def mark_paid(self, reference: str, tx_hash: str) -> PaymentIntent:
        """
        Transition a Pending intent to Paid, recording the settling transaction.

        Raises:
            IntentNotFound: Unknown reference
            AlreadyPaid: The intent is already Paid (carries the stored intent)
            IntentExpired: The intent is Pending but past its expiry window
            TransactionAlreadyUsed: tx_hash already settled another intent
        """
        tx_hash = normalize_tx_hash(tx_hash)

        with self.store.lock(reference):
            intent = self.get(reference)

            if intent.is_paid:
                raise AlreadyPaid(
                    f"Reference {reference} already paid by {intent.tx_hash}",
                    intent=intent,
                )
            if self.is_expired(intent):
                raise IntentExpired(
                    f"Reference {reference} expired at {self.expires_at(intent).isoformat()}"
                )
            if not self.store.claim_tx_hash(tx_hash, reference):
                raise TransactionAlreadyUsed(
                    f"Transaction {tx_hash} already settled another payment intent"
                )

            paid = replace(
                intent,
                status=IntentStatus.PAID,
                tx_hash=tx_hash,
                paid_at=self._clock(),
            )
            self.store.put(paid)

        logger.info(f"x402: Intent {reference} marked paid by {tx_hash}")
        return paid

    def sweep_expired(self) -> int:
        """
        Delete expired Pending intents.

        Returns:
            Number of intents removed
        """
        removed = 0
        for intent in self.store.values():
            if not self.is_expired(intent):
                continue
            with self.store.lock(intent.reference):
                # Re-check under the lock; a verifier may have just paid it
                current = self.store.get(intent.reference)
                if current is None or not self.is_expired(current):
                    continue
                self.store.delete(intent.reference)
                self._remember_swept(current)
                removed += 1

        if removed:
            logger.info(f"x402: Swept {removed} expired payment intents")
            log_intents_swept(removed)
        return removed

    def _remember_swept(self, intent: PaymentIntent) -> None:
        with self._swept_lock:
            self._swept[intent.reference] = self.expires_at(intent)
            while len(self._swept) > MAX_SWEPT_REFERENCES:
                self._swept.popitem(last=False)

    def _maybe_sweep(self) -> None:
        """Run sweep_expired() at most once per sweep interval."""
        now = time.monotonic()
        if now - self._last_sweep < self.sweep_interval_seconds:
            return

        with self._sweep_lock:
            if now - self._last_sweep < self.sweep_interval_seconds:
                return
            self._last_sweep = now

        self.sweep_expired()


# Global ledger instance
_ledger: Optional[IntentLedger] = None
_ledger_lock = threading.Lock()


def get_ledger() -> IntentLedger:
    """
    Get the global ledger instance.

    Returns:
        The singleton IntentLedger backed by an in-memory store
    """
    global _ledger

    if _ledger is None:
        with _ledger_lock:
            if _ledger is None:
                _ledger = IntentLedger()

    return _ledger


def reset_ledger() -> None:
    """Drop the global ledger (useful for testing)."""
    global _ledger
    with _ledger_lock:
        _ledger = None
