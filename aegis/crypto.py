"""Command authentication and freshness checks for AEGIS."""
from __future__ import annotations

import hmac
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Protocol

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .envelope import CommandEnvelope, normalize_parameters, signing_payload
from .state import AegisError, CommandKind, Failure, SourceTag

logger = logging.getLogger(__name__)

_TAG_LENGTH = 16
_GCM_NONCE_LENGTH = 12
_MAX_NONCE = (1 << (8 * _GCM_NONCE_LENGTH)) - 1


class SessionKeyError(AegisError):
    """Raised when key material for a session is not available."""


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of authenticating a single envelope."""

    valid: bool
    failure: Optional[Failure] = None
    session_id: Optional[str] = None
    nonce: Optional[int] = None

    def __post_init__(self) -> None:
        if self.valid and self.failure is not None:
            raise ValueError("A valid verification result cannot carry a failure reason")
        if not self.valid and self.failure is None:
            raise ValueError("An invalid verification result requires a failure reason")

    @classmethod
    def ok(cls, envelope: CommandEnvelope) -> "VerificationResult":
        return cls(valid=True, session_id=envelope.session_id, nonce=envelope.nonce)

    @classmethod
    def failed(cls, envelope: CommandEnvelope, failure: Failure) -> "VerificationResult":
        return cls(valid=False, failure=failure, session_id=envelope.session_id, nonce=envelope.nonce)

    def as_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "failure": self.failure.value if self.failure else None,
            "session_id": self.session_id,
            "nonce": self.nonce,
        }


def derive_session_key(shared_secret: bytes, session_id: str, salt: bytes) -> bytes:
    """Derive the AES-256 command key bound to ``session_id``."""

    hkdf = HKDF(
        algorithm=hashes.SHA3_256(),
        length=32,
        salt=salt,
        info=b"AEGIS-COMMAND-AUTH|" + session_id.encode("utf-8"),
    )
    return hkdf.derive(shared_secret)


def compute_tag(key: bytes, payload: bytes, nonce: int) -> bytes:
    """Return the AES-GCM authentication tag over ``payload``.

    Nothing is encrypted: the canonical envelope is passed as associated data,
    so the cipher output is exactly the 16-byte GMAC tag.
    """

    if nonce < 0 or nonce > _MAX_NONCE:
        raise ValueError("nonce does not fit a 96-bit GCM nonce")
    gcm_nonce = nonce.to_bytes(_GCM_NONCE_LENGTH, "big")
    return AESGCM(key).encrypt(gcm_nonce, b"", payload)


@dataclass
class CommandSession:
    """Key material and nonce high-water mark for one link session."""

    session_id: str
    key: bytes
    high_water: int = -1
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def check_and_advance(self, nonce: int) -> bool:
        """Atomically accept ``nonce`` if it is above the high-water mark."""

        with self._lock:
            if nonce <= self.high_water:
                return False
            self.high_water = nonce
            return True

    def peek_high_water(self) -> int:
        with self._lock:
            return self.high_water


class SessionKeyring:
    """Registry of the sessions whose commands this engine may authenticate."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CommandSession] = {}
        self._lock = threading.RLock()

    def establish(
        self,
        session_id: str,
        shared_secret: bytes,
        *,
        salt: Optional[bytes] = None,
    ) -> CommandSession:
        if not shared_secret:
            raise SessionKeyError("Shared secret must not be empty")
        salt = salt or os.urandom(16)
        session = CommandSession(session_id=session_id, key=derive_session_key(shared_secret, session_id, salt))
        with self._lock:
            self._sessions[session_id] = session
        logger.info("Established command session %s", session_id)
        return session

    def install(self, session_id: str, key: bytes) -> CommandSession:
        if len(key) not in (16, 24, 32):
            raise SessionKeyError("AES-GCM keys must be 128, 192 or 256 bits")
        session = CommandSession(session_id=session_id, key=key)
        with self._lock:
            self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[CommandSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def require(self, session_id: str) -> CommandSession:
        session = self.get(session_id)
        if session is None:
            raise SessionKeyError(f"No key material for session '{session_id}'")
        return session

    def revoke(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions


class CommandSigner:
    """Ground-station side helper producing authenticated raw commands."""

    def __init__(self, session_id: str, key: bytes) -> None:
        self.session_id = session_id
        self._key = key

    @classmethod
    def for_session(cls, keyring: SessionKeyring, session_id: str) -> "CommandSigner":
        return cls(session_id, keyring.require(session_id).key)

    def sign(
        self,
        kind: CommandKind | str,
        nonce: int,
        parameters: Optional[Mapping[str, object]] = None,
        *,
        source: SourceTag | str = SourceTag.KNOWN_GROUND_STATION,
    ) -> dict[str, object]:
        """Return a raw command mapping ready for :meth:`CommandQueue.submit`."""

        command_kind = CommandKind.parse(kind)
        source_tag = SourceTag.parse(source)
        normalized = normalize_parameters(command_kind, parameters or {})
        payload = signing_payload(
            session_id=self.session_id,
            kind=command_kind,
            parameters=normalized,
            source=source_tag,
            nonce=nonce,
        )
        return {
            "kind": command_kind.value,
            "parameters": normalized,
            "source": source_tag.value,
            "session_id": self.session_id,
            "nonce": nonce,
            "auth_tag": compute_tag(self._key, payload, nonce),
        }


class Verifier(Protocol):
    """Pluggable authenticity and freshness check."""

    def verify(self, envelope: CommandEnvelope) -> VerificationResult:
        ...


class CryptoVerifier:
    """AES-GCM tag check plus per-session monotonic nonce enforcement.

    Never looks at command semantics; failures are returned, not raised,
    and never retried.
    """

    def __init__(self, keyring: SessionKeyring) -> None:
        self._keyring = keyring

    def verify(self, envelope: CommandEnvelope) -> VerificationResult:
        session = self._keyring.get(envelope.session_id)
        if session is None:
            return VerificationResult.failed(envelope, Failure.UNKNOWN_KEY)

        try:
            expected = compute_tag(session.key, envelope.signing_payload(), envelope.nonce)
        except ValueError:
            return VerificationResult.failed(envelope, Failure.INTEGRITY_FAILURE)
        if len(envelope.auth_tag) != _TAG_LENGTH or not hmac.compare_digest(expected, envelope.auth_tag):
            return VerificationResult.failed(envelope, Failure.INTEGRITY_FAILURE)

        if not session.check_and_advance(envelope.nonce):
            logger.debug(
                "Nonce %s at or below high-water mark %s for session %s",
                envelope.nonce,
                session.peek_high_water(),
                envelope.session_id,
            )
            return VerificationResult.failed(envelope, Failure.REPLAYED_NONCE)

        return VerificationResult.ok(envelope)


__all__ = [
    "CommandSession",
    "CommandSigner",
    "CryptoVerifier",
    "SessionKeyError",
    "SessionKeyring",
    "VerificationResult",
    "Verifier",
    "compute_tag",
    "derive_session_key",
]
