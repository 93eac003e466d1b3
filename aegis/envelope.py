"""Command envelopes and the ordered intake queue."""
from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from itertools import count
from typing import Deque, Dict, Mapping, Optional

from .audit import AuditLog
from .state import AegisError, Clock, CommandKind, Severity, SourceTag, SystemClock

logger = logging.getLogger(__name__)


class InvalidTransition(AegisError):
    """Raised when a lifecycle step skips or revisits a stage."""


class UnknownCommandError(AegisError, KeyError):
    """Raised when an envelope id was never submitted."""


class MalformedCommandError(AegisError, ValueError):
    """Raised when a raw command cannot be framed into an envelope."""


class LifecycleStatus(str, Enum):
    CREATED = "CREATED"
    DISPATCHED = "DISPATCHED"
    VALIDATING = "VALIDATING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"

    @property
    def terminal(self) -> bool:
        return self in (LifecycleStatus.ACCEPTED, LifecycleStatus.REJECTED)


_SUCCESSORS: Dict[LifecycleStatus, frozenset[LifecycleStatus]] = {
    LifecycleStatus.CREATED: frozenset({LifecycleStatus.DISPATCHED}),
    LifecycleStatus.DISPATCHED: frozenset({LifecycleStatus.VALIDATING}),
    LifecycleStatus.VALIDATING: frozenset({LifecycleStatus.ACCEPTED, LifecycleStatus.REJECTED}),
    LifecycleStatus.ACCEPTED: frozenset(),
    LifecycleStatus.REJECTED: frozenset(),
}

_REQUIRED_PARAMETERS = {
    CommandKind.GOTO: ("latitude", "longitude", "altitude"),
    CommandKind.SET_MODE: ("mode",),
    CommandKind.SET_VELOCITY: ("speed",),
}
_STRING_PARAMETERS = frozenset({"mode"})
_PARAMETER_ALIASES = {"lat": "latitude", "lon": "longitude", "lng": "longitude", "alt": "altitude"}


@dataclass
class CommandEnvelope:
    """One inbound control instruction plus its provenance metadata."""

    id: str
    kind: CommandKind
    parameters: Mapping[str, float | str]
    source: SourceTag
    session_id: str
    nonce: int
    auth_tag: bytes
    received_at: datetime
    sequence: int
    status: LifecycleStatus = LifecycleStatus.CREATED

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, object],
        *,
        envelope_id: str,
        received_at: datetime,
        sequence: int,
    ) -> "CommandEnvelope":
        """Frame a raw command mapping delivered by the transport layer."""

        if not isinstance(payload, Mapping):
            raise MalformedCommandError("Raw command must be a mapping")
        try:
            kind = CommandKind.parse(payload.get("kind") or payload.get("type"))
        except ValueError as exc:
            raise MalformedCommandError(str(exc)) from exc

        parameters = normalize_parameters(kind, payload.get("parameters") or payload.get("params"))

        nonce_raw = payload.get("nonce")
        if isinstance(nonce_raw, bool) or not isinstance(nonce_raw, int) or nonce_raw < 0:
            raise MalformedCommandError("nonce must be a non-negative integer")

        return cls(
            id=envelope_id,
            kind=kind,
            parameters=parameters,
            source=SourceTag.parse(payload.get("source") or payload.get("source_tag")),
            session_id=str(payload.get("session_id") or payload.get("session") or "default"),
            nonce=nonce_raw,
            auth_tag=_coerce_tag(payload.get("auth_tag")),
            received_at=received_at,
            sequence=sequence,
        )

    def signing_payload(self) -> bytes:
        return signing_payload(
            session_id=self.session_id,
            kind=self.kind,
            parameters=self.parameters,
            source=self.source,
            nonce=self.nonce,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "parameters": dict(self.parameters),
            "source": self.source.value,
            "session_id": self.session_id,
            "nonce": self.nonce,
            "auth_tag": self.auth_tag.hex(),
            "received_at": self.received_at.isoformat(),
            "status": self.status.value,
        }


def signing_payload(
    *,
    session_id: str,
    kind: CommandKind,
    parameters: Mapping[str, object],
    source: SourceTag,
    nonce: int,
) -> bytes:
    """Canonical bytes covered by the authentication tag."""

    document = {
        "session": session_id,
        "kind": kind.value,
        "parameters": {key: parameters[key] for key in sorted(parameters)},
        "source": source.value,
        "nonce": nonce,
    }
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def normalize_parameters(kind: CommandKind, raw: object) -> Dict[str, float | str]:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise MalformedCommandError("parameters must be a mapping")

    parameters: Dict[str, float | str] = {}
    for key, value in raw.items():
        name = _PARAMETER_ALIASES.get(str(key).lower(), str(key).lower())
        if name in _STRING_PARAMETERS:
            parameters[name] = str(value).strip().upper()
            continue
        if isinstance(value, bool):
            raise MalformedCommandError(f"parameter '{name}' must be numeric")
        try:
            parameters[name] = float(value)
        except (TypeError, ValueError):
            raise MalformedCommandError(f"parameter '{name}' must be numeric") from None

    missing = [name for name in _REQUIRED_PARAMETERS.get(kind, ()) if name not in parameters]
    if missing:
        raise MalformedCommandError(f"{kind.value} requires {', '.join(missing)}")
    return parameters


def _coerce_tag(value: object) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError:
            raise MalformedCommandError("auth_tag must be bytes or a hex string") from None
    raise MalformedCommandError("auth_tag must be bytes or a hex string")


@dataclass
class _QueueRecord:
    envelope: CommandEnvelope
    lock: threading.Lock = field(default_factory=threading.Lock)


class CommandQueue:
    """Assigns identity to raw commands and enforces the forward-only lifecycle."""

    def __init__(self, *, audit: AuditLog, clock: Optional[Clock] = None, retain: int = 1024) -> None:
        self._audit = audit
        self._clock = clock or SystemClock()
        self._records: Dict[str, _QueueRecord] = {}
        self._pending: Deque[str] = deque()
        self._finished: Deque[str] = deque()
        self._retain = retain
        self._sequence = count()
        self._lock = threading.RLock()

    def submit(self, raw: Mapping[str, object]) -> CommandEnvelope:
        with self._lock:
            envelope_id = uuid.uuid4().hex
            while envelope_id in self._records:
                envelope_id = uuid.uuid4().hex
            envelope = CommandEnvelope.from_payload(
                raw,
                envelope_id=envelope_id,
                received_at=self._clock.now(),
                sequence=next(self._sequence),
            )
            self._records[envelope.id] = _QueueRecord(envelope=envelope)
            self._pending.append(envelope.id)

        self._audit.emit(
            envelope.received_at,
            "CMD_RECEIVED",
            f"{envelope.kind.value} nonce={envelope.nonce} source={envelope.source.value}",
            Severity.INFO,
            envelope_id=envelope.id,
        )
        return envelope

    def next_pending(self) -> Optional[CommandEnvelope]:
        """Pop the oldest envelope that has not started processing."""

        with self._lock:
            if not self._pending:
                return None
            return self._records[self._pending.popleft()].envelope

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def get(self, envelope_id: str) -> CommandEnvelope:
        return self._record(envelope_id).envelope

    def advance(self, envelope_id: str, next_status: LifecycleStatus) -> CommandEnvelope:
        record = self._record(envelope_id)
        next_status = LifecycleStatus(next_status)
        with record.lock:
            current = record.envelope.status
            if next_status not in _SUCCESSORS[current]:
                message = f"{current.value} -> {next_status.value} is not a forward lifecycle step"
                self._audit.emit(
                    self._clock.now(),
                    "LIFECYCLE_ERROR",
                    message,
                    Severity.ERROR,
                    envelope_id=envelope_id,
                )
                raise InvalidTransition(message)
            record.envelope.status = next_status
        if next_status.terminal:
            self._retire(envelope_id)
        logger.debug("Envelope %s advanced %s -> %s", envelope_id, current.value, next_status.value)
        return record.envelope

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._pending.clear()
            self._finished.clear()

    def _retire(self, envelope_id: str) -> None:
        with self._lock:
            self._finished.append(envelope_id)
            while len(self._finished) > self._retain:
                self._records.pop(self._finished.popleft(), None)

    def _record(self, envelope_id: str) -> _QueueRecord:
        with self._lock:
            try:
                return self._records[envelope_id]
            except KeyError:
                raise UnknownCommandError(envelope_id) from None


__all__ = [
    "CommandEnvelope",
    "CommandQueue",
    "InvalidTransition",
    "LifecycleStatus",
    "MalformedCommandError",
    "UnknownCommandError",
    "normalize_parameters",
    "signing_payload",
]
