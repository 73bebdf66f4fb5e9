"""
PIN gate for SnagLink.

Second factor for magic links: a short numeric PIN checked against a
salted hash, with progressive lockout after repeated mismatches.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

import nacl.pwhash

from .db import Store
from .logging_config import security_log
from .models import MagicLink
from .security import constant_time_equal
from .tokens import generate_salt
from .util import now_epoch, seconds_until, sha256_hex

SCHEME_SHA256 = "sha256"
SCHEME_ARGON2ID = "argon2id"
ARGON2ID_KEY_BYTES = 32


class PinOutcome(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    LOCKED = "locked"
    NOT_CONFIGURED = "not_configured"


@dataclass
class PinResult:
    outcome: PinOutcome
    attempts_remaining: Optional[int] = None
    retry_after: Optional[int] = None
    locked: bool = False

    @property
    def verified(self) -> bool:
        return self.outcome == PinOutcome.VERIFIED


def hash_pin_with_salt(pin: str, salt: str, scheme: str = SCHEME_SHA256) -> str:
    """
    Hash a PIN with an existing hex salt.

    sha256 is the digest of the salt string followed by the PIN.
    argon2id derives 32 bytes from the PIN keyed by the raw salt bytes.

    Returns:
        Lowercase hex digest
    """
    if scheme == SCHEME_SHA256:
        return sha256_hex((salt + pin).encode("utf-8"))
    if scheme == SCHEME_ARGON2ID:
        key = nacl.pwhash.argon2id.kdf(
            ARGON2ID_KEY_BYTES,
            pin.encode("utf-8"),
            bytes.fromhex(salt),
            opslimit=nacl.pwhash.argon2id.OPSLIMIT_INTERACTIVE,
            memlimit=nacl.pwhash.argon2id.MEMLIMIT_INTERACTIVE,
        )
        return key.hex()
    raise ValueError(f"unknown PIN hash scheme: {scheme}")


class PinGate:
    """Verifies PINs against stored links and maintains the failure counter."""

    def __init__(self, store: Store, max_attempts: int = 5, lockout_seconds: int = 300,
                 scheme: str = SCHEME_SHA256, clock: Callable[[], int] = now_epoch):
        self._store = store
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.scheme = scheme
        self._clock = clock

    def hash_pin(self, pin: str) -> Tuple[str, str, str]:
        """
        Hash a new PIN with a fresh salt.

        Returns:
            (hash, salt, scheme)
        """
        salt = generate_salt()
        return hash_pin_with_salt(pin, salt, self.scheme), salt, self.scheme

    def verify(self, pin: str, link: MagicLink) -> PinResult:
        """
        Check a submitted PIN for a link.

        A locked link is rejected without touching the counter. A match
        clears the counter and any lock; a mismatch adds one failure and
        locks the link once max_attempts is reached.
        """
        now = self._clock()

        if link.is_locked(now):
            return PinResult(PinOutcome.LOCKED, retry_after=seconds_until(link.locked_until, now))

        if not link.requires_pin:
            return PinResult(PinOutcome.NOT_CONFIGURED)

        candidate = hash_pin_with_salt(pin, link.pin_salt, link.pin_scheme or SCHEME_SHA256)
        if constant_time_equal(candidate, link.pin_hash):
            self._store.reset_pin_failures(link.id)
            return PinResult(PinOutcome.VERIFIED)

        update = self._store.increment_failure_and_maybe_lock(
            link.id, self.max_attempts, now + self.lockout_seconds, now
        )
        if not update.applied:
            # Locked by a concurrent request between load and increment
            retry_after = seconds_until(update.locked_until, now) if update.locked_until else self.lockout_seconds
            return PinResult(PinOutcome.LOCKED, retry_after=retry_after)

        remaining = max(0, self.max_attempts - update.failed_attempts)
        just_locked = update.locked_until is not None and update.locked_until > now
        if just_locked:
            security_log.security_event("pin_lockout", severity="high", link_id=link.id,
                                        failed_attempts=update.failed_attempts,
                                        locked_until=update.locked_until)
            return PinResult(PinOutcome.MISMATCH, attempts_remaining=0,
                             retry_after=seconds_until(update.locked_until, now), locked=True)
        return PinResult(PinOutcome.MISMATCH, attempts_remaining=remaining)
