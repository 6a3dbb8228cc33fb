from app.services.conversation_service import Orchestrator
from app.services.errors import (
    ConnectivityError,
    ExternalServiceError,
    InvalidOrderTransitionError,
    InvalidStepError,
    RateLimitedError,
    ReadinessError,
    ValidationError,
)
from app.services.result import Result

__all__ = [
    "Orchestrator",
    "Result",
    "ValidationError",
    "ReadinessError",
    "ConnectivityError",
    "ExternalServiceError",
    "InvalidOrderTransitionError",
    "InvalidStepError",
    "RateLimitedError",
]
