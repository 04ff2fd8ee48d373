"""Core data model for the tutorial engine.

Step and action identifiers are closed enums so that transitions can be
checked exhaustively. Progress is a plain dataclass that converts to and
from the persisted row shape, while step, detection and tutorial
configuration are immutable pydantic models shared by the state machine,
the detector and the template registry.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class TutorialStepId(str, Enum):
    """Identifiers of the onboarding steps.

    ``COMPLETION`` is the terminal sentinel: a user whose current step is
    ``COMPLETION`` has passed every step of their catalog.
    """

    WELCOME = "welcome"
    NAVIGATION = "navigation"
    TASK_CREATION = "task_creation"
    AI_SUGGESTIONS = "ai_suggestions"
    SOCIAL_FEATURES = "social_features"
    CRASHOUT_ROOM = "crashout_room"
    ACHIEVEMENTS = "achievements"
    COMPLETION = "completion"


class ActionKey(str, Enum):
    """User-performed conditions a step can require before advancing."""

    TAB_CLICK = "tab_click"
    TASK_CREATED = "task_created"
    AI_INTERACTION = "ai_interaction"
    CONNECTIONS_EXPLORED = "connections_explored"
    CRASHOUT_VISITED = "crashout_visited"
    ACHIEVEMENTS_VIEWED = "achievements_viewed"


def parse_step(value: "TutorialStepId | str") -> TutorialStepId | None:
    """Coerce a step key, returning None for unknown values."""
    try:
        return TutorialStepId(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


@dataclass
class TutorialProgress:
    """A user's persisted position in the tutorial.

    Attributes:
        user_id: Opaque identifier supplied by the identity provider.
        current_step: Step the user is on, or ``COMPLETION``.
        completed_steps: Steps already passed, in order, without duplicates.
        is_completed: Terminal flag set on the final advance or a skip.
        is_skipped: Terminal flag set when the whole tutorial was skipped.
        completed_actions: Actions confirmed by the detector, in order.
        last_action_completed: Most recently confirmed action.
        last_action_time: ISO timestamp of the most recent confirmation.
        extra: Free-form step data owned by callers.
        error_count: Failures recorded since the last restart.
        last_error: Message of the most recent recorded failure.
        started_at: ISO timestamp of the first step (restamped on restart).
        last_seen_at: ISO timestamp of the last write.
        completed_at: ISO timestamp of completion, or None.
    """

    user_id: str
    current_step: TutorialStepId
    completed_steps: list[TutorialStepId] = field(default_factory=list)
    is_completed: bool = False
    is_skipped: bool = False
    completed_actions: list[ActionKey] = field(default_factory=list)
    last_action_completed: ActionKey | None = None
    last_action_time: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    error_count: int = 0
    last_error: str | None = None
    started_at: str = ""
    last_seen_at: str = ""
    completed_at: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        """Whether the tutorial should not be resumed."""
        return self.is_completed or self.is_skipped

    def step_data(self) -> dict[str, Any]:
        """Build the persisted ``step_data`` map."""
        data = dict(self.extra)
        data["completedActions"] = [a.value for a in self.completed_actions]
        if self.last_action_completed is not None:
            data["lastActionCompleted"] = self.last_action_completed.value
        if self.last_action_time is not None:
            data["lastActionTime"] = self.last_action_time
        return data

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted row shape."""
        return {
            "user_id": self.user_id,
            "current_step": self.current_step.value,
            "completed_steps": [s.value for s in self.completed_steps],
            "is_completed": self.is_completed,
            "is_skipped": self.is_skipped,
            "step_data": self.step_data(),
            "error_count": self.error_count,
            "last_error": self.last_error,
            "started_at": self.started_at,
            "last_seen_at": self.last_seen_at,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TutorialProgress":
        """Deserialize from a persisted row.

        Unknown step or action keys in stored data are dropped rather than
        failing the whole read.
        """
        step_data = dict(data.get("step_data") or {})
        raw_actions = step_data.pop("completedActions", []) or []
        last_action = step_data.pop("lastActionCompleted", None)
        last_action_time = step_data.pop("lastActionTime", None)

        actions: list[ActionKey] = []
        for raw in raw_actions:
            try:
                action = ActionKey(raw)
            except ValueError:
                continue
            if action not in actions:
                actions.append(action)

        completed: list[TutorialStepId] = []
        for raw in data.get("completed_steps") or []:
            step = parse_step(raw)
            if step is not None and step not in completed:
                completed.append(step)

        current = parse_step(data.get("current_step", TutorialStepId.WELCOME.value))
        try:
            last = ActionKey(last_action) if last_action else None
        except ValueError:
            last = None

        return cls(
            user_id=data["user_id"],
            current_step=current or TutorialStepId.WELCOME,
            completed_steps=completed,
            is_completed=bool(data.get("is_completed", False)),
            is_skipped=bool(data.get("is_skipped", False)),
            completed_actions=actions,
            last_action_completed=last,
            last_action_time=last_action_time,
            extra=step_data,
            error_count=int(data.get("error_count") or 0),
            last_error=data.get("last_error"),
            started_at=data.get("started_at") or "",
            last_seen_at=data.get("last_seen_at") or "",
            completed_at=data.get("completed_at"),
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
        )


@dataclass
class StepActionStatus:
    """Whether the active step needs an action and whether it is satisfied."""

    needs_action: bool
    action_completed: bool
    action: ActionKey | None = None


@dataclass
class TutorialResult(Generic[T]):
    """Outcome of a state-machine write.

    Failures carry a structured error record instead of raising so that
    callers can render a recovery message.
    """

    success: bool
    data: T | None = None
    error: Any = None
    retry_count: int = 0


# ---------------------------------------------------------------------------
# Configuration models
# ---------------------------------------------------------------------------


class TutorialConfig(BaseModel):
    """Tutorial-wide behaviour flags and detection defaults."""

    auto_start: bool = Field(default=True, description="Start automatically for new users")
    enable_analytics: bool = Field(default=True, description="Record tutorial analytics events")
    max_retries: int = Field(default=3, ge=0, description="Default detection retry budget")
    default_timeout: int = Field(
        default=30000, gt=0, description="Default detection timeout in milliseconds"
    )
    enable_accessibility: bool = True
    enable_keyboard_navigation: bool = True
    fallback_mode: bool = True
    debug_mode: bool = False


DEFAULT_TUTORIAL_CONFIG = TutorialConfig()


class ActionDetectionConfig(BaseModel):
    """How to detect one required action.

    ``timeout`` and ``retries`` may be left unset, in which case the
    tutorial's ``default_timeout`` and ``max_retries`` apply.
    """

    model_config = ConfigDict(frozen=True)

    selectors: list[str] = Field(default_factory=list)
    fallback_selectors: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=lambda: ["click"])
    fallback_events: list[str] = Field(default_factory=lambda: ["keydown"])
    custom_event_name: str | None = None
    presence_selectors: list[str] = Field(
        default_factory=list,
        description="Elements whose appearance under watch_region satisfies the action",
    )
    watch_region: str | None = Field(
        default=None, description="Selector of the region to observe; None means the root"
    )
    timeout: int | None = Field(default=None, gt=0, description="Milliseconds per attempt")
    retries: int | None = Field(default=None, ge=0, description="Re-arm attempts after a timeout")


class ContextualHelp(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    position: str = "bottom"


class AccessibilityHints(BaseModel):
    model_config = ConfigDict(frozen=True)

    aria_label: str | None = None
    keyboard_shortcut: str | None = None
    screen_reader_text: str | None = None


class StepDefinition(BaseModel):
    """One step of a tutorial as produced by the template registry."""

    model_config = ConfigDict(frozen=True)

    id: TutorialStepId
    title: str
    description: str = ""
    message: str = ""
    animation: str = "idle"
    duration: int = Field(default=30, description="Suggested display time in seconds")
    target_elements: list[str] = Field(default_factory=list)
    required_action: ActionKey | None = None
    skip_allowed: bool = True
    auto_advance: bool = False
    target_tab: int | None = None
    action_instructions: str | None = None
    contextual_help: ContextualHelp | None = None
    accessibility: AccessibilityHints | None = None
    action_detection: ActionDetectionConfig | None = None


@dataclass
class TutorialReward:
    """A reward the downstream ledger grants when a step is passed."""

    step: TutorialStepId
    reward_type: str  # "coins", "achievement" or "unlock"
    reward_value: int
    message: str
    achievement_type: str | None = None
    is_active: bool = True


DEFAULT_REWARDS: tuple[TutorialReward, ...] = (
    TutorialReward(TutorialStepId.WELCOME, "coins", 10, "Welcome aboard!"),
    TutorialReward(TutorialStepId.NAVIGATION, "coins", 5, "You're getting the hang of this!"),
    TutorialReward(TutorialStepId.TASK_CREATION, "coins", 15, "Great job creating your first task!"),
    TutorialReward(TutorialStepId.AI_SUGGESTIONS, "coins", 20, "AI is now your study buddy!"),
    TutorialReward(TutorialStepId.SOCIAL_FEATURES, "coins", 10, "Ready to connect with others!"),
    TutorialReward(TutorialStepId.CRASHOUT_ROOM, "coins", 10, "Stress relief unlocked!"),
    TutorialReward(TutorialStepId.ACHIEVEMENTS, "coins", 5, "You understand the game now!"),
    TutorialReward(
        TutorialStepId.COMPLETION,
        "achievement",
        100,
        "Tutorial completed! You're ready to conquer your studies!",
        achievement_type="tutorial_master",
    ),
)
