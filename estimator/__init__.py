"""AI estimator widget core: business scans, estimates and live voice sessions."""

from estimator.config import make_client
from estimator.estimate import estimate
from estimator.models import (
    BusinessProfile,
    EstimateTask,
    EstimationResult,
    IntelligenceSource,
    RecommendedService,
    RetryPolicy,
)
from estimator.scan import scan
from estimator.voice import SessionState, VoiceSessionController, start_voice_session, stop_voice_session

__all__ = [
    "BusinessProfile",
    "EstimateTask",
    "EstimationResult",
    "IntelligenceSource",
    "RecommendedService",
    "RetryPolicy",
    "SessionState",
    "VoiceSessionController",
    "estimate",
    "make_client",
    "scan",
    "start_voice_session",
    "stop_voice_session",
]
