"""AEGIS core exports."""

from .audit import AuditLog, LogEvent
from .config import EngineSettings, get_settings
from .crypto import (
    CommandSession,
    CommandSigner,
    CryptoVerifier,
    SessionKeyError,
    SessionKeyring,
    VerificationResult,
)
from .engine import AegisEngine, CommandOutcome
from .envelope import (
    CommandEnvelope,
    CommandQueue,
    InvalidTransition,
    LifecycleStatus,
    MalformedCommandError,
    UnknownCommandError,
)
from .failsafe import DwellTimer, SafeMode, SafeModeMachine, SafeModeState, SafeModeTransition
from .features import CommandHistory, Feature, FeatureExtractor, FeatureVector
from .fusion import Decision, Verdict, decide
from .runtime import AsyncCommandProcessor
from .scoring import RuleBasedTrustScorer, ScoreHistory, StaticTrustScorer, TrustScore, TrustScorer
from .state import (
    AegisError,
    CommandKind,
    Failure,
    ManualClock,
    Severity,
    SourceTag,
    SystemClock,
    VehicleSnapshot,
    VehicleState,
)

__all__ = [
    "AegisEngine",
    "AegisError",
    "AsyncCommandProcessor",
    "AuditLog",
    "CommandEnvelope",
    "CommandHistory",
    "CommandKind",
    "CommandOutcome",
    "CommandQueue",
    "CommandSession",
    "CommandSigner",
    "CryptoVerifier",
    "Decision",
    "DwellTimer",
    "EngineSettings",
    "Failure",
    "Feature",
    "FeatureExtractor",
    "FeatureVector",
    "InvalidTransition",
    "LifecycleStatus",
    "LogEvent",
    "MalformedCommandError",
    "ManualClock",
    "RuleBasedTrustScorer",
    "SafeMode",
    "SafeModeMachine",
    "SafeModeState",
    "SafeModeTransition",
    "ScoreHistory",
    "SessionKeyError",
    "SessionKeyring",
    "Severity",
    "SourceTag",
    "StaticTrustScorer",
    "SystemClock",
    "TrustScore",
    "TrustScorer",
    "UnknownCommandError",
    "VehicleSnapshot",
    "VehicleState",
    "Verdict",
    "VerificationResult",
    "decide",
    "get_settings",
]
