"""tutorflow - adaptive onboarding tutorial engine.

Sequences a multi-step product tour per user, detects the actions each step
asks for, and recovers from failures without losing progress.
"""

__version__ = "0.1.0"

from .definition import TutorialDefinition
from .detection import ActionDetector, DetectionState, DetectionStatus, Escalation
from .errors import ErrorCode, ErrorHandler, RecoveryAction, RecoveryDecision, TutorialError
from .manager import TutorialManager
from .models import (
    ActionDetectionConfig,
    ActionKey,
    StepDefinition,
    TutorialConfig,
    TutorialProgress,
    TutorialResult,
    TutorialStepId,
)
from .session import TutorialSession, create_session
from .settings import EngineSettings, load_settings
from .templates import TutorialConfigManager, TutorialTemplate, TutorialVariant, UserTraits

__all__ = [
    "ActionDetectionConfig",
    "ActionDetector",
    "ActionKey",
    "DetectionState",
    "DetectionStatus",
    "EngineSettings",
    "ErrorCode",
    "ErrorHandler",
    "Escalation",
    "RecoveryAction",
    "RecoveryDecision",
    "StepDefinition",
    "TutorialConfig",
    "TutorialConfigManager",
    "TutorialDefinition",
    "TutorialError",
    "TutorialManager",
    "TutorialProgress",
    "TutorialResult",
    "TutorialSession",
    "TutorialStepId",
    "TutorialTemplate",
    "TutorialVariant",
    "UserTraits",
    "__version__",
    "create_session",
    "load_settings",
]
