"""Resolved, per-user tutorial definitions."""

from dataclasses import dataclass, field

from .models import (
    ActionDetectionConfig,
    StepDefinition,
    TutorialConfig,
    TutorialStepId,
    parse_step,
)


@dataclass(frozen=True)
class TutorialDefinition:
    """Ordered steps plus the effective config for one user.

    The step list may contain a ``COMPLETION`` step carrying the content of
    the closing bubble; it never takes part in sequencing. Advancing from the
    last non-terminal step moves the user to ``COMPLETION``.

    Attributes:
        template_id: Template the definition was generated from.
        steps: Ordered step definitions.
        config: Effective tutorial config after all overlays.
        variant_id: Variant applied on top of the template, if any.
    """

    template_id: str
    steps: tuple[StepDefinition, ...]
    config: TutorialConfig = field(default_factory=TutorialConfig)
    variant_id: str | None = None

    def __post_init__(self) -> None:
        ids = [s.id for s in self.steps]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate step ids in tutorial '{self.template_id}'")
        if not self.sequence:
            raise ValueError(f"Tutorial '{self.template_id}' has no steps")

    @property
    def sequence(self) -> list[TutorialStepId]:
        """Step ids that take part in sequencing, in order."""
        return [s.id for s in self.steps if s.id is not TutorialStepId.COMPLETION]

    @property
    def first_step(self) -> TutorialStepId:
        return self.sequence[0]

    @property
    def final_step(self) -> TutorialStepId:
        return self.sequence[-1]

    def contains(self, step: TutorialStepId) -> bool:
        return step in self.sequence

    def successor(self, step: TutorialStepId) -> TutorialStepId:
        """Return the step after ``step``, or ``COMPLETION`` after the last one.

        Raises:
            ValueError: If ``step`` is not part of the sequence.
        """
        sequence = self.sequence
        index = sequence.index(step)
        if index == len(sequence) - 1:
            return TutorialStepId.COMPLETION
        return sequence[index + 1]

    def position_of(self, step: TutorialStepId) -> int | None:
        """0-indexed position of a step in the sequence."""
        try:
            return self.sequence.index(step)
        except ValueError:
            return None

    def get_step(self, step: "TutorialStepId | str") -> StepDefinition | None:
        key = parse_step(step)
        if key is None:
            return None
        for definition in self.steps:
            if definition.id is key:
                return definition
        return None

    def detection_for(self, step: "TutorialStepId | str") -> ActionDetectionConfig | None:
        """Detection config for a step with tutorial defaults filled in.

        Steps that require an action but carry no explicit detection config
        get an empty strategy set, leaving completion to the detector's
        process-wide action signals.
        """
        definition = self.get_step(step)
        if definition is None or definition.required_action is None:
            return None

        detection = definition.action_detection or ActionDetectionConfig(events=[])
        return self.resolve_detection(detection)

    def resolve_detection(self, detection: ActionDetectionConfig) -> ActionDetectionConfig:
        """Fill unset timeout and retries from the tutorial config.

        Fallback selectors and fallback events are cleared when the
        tutorial disables fallback mode or keyboard navigation.
        """
        updates: dict = {}
        if detection.timeout is None:
            updates["timeout"] = self.config.default_timeout
        if detection.retries is None:
            updates["retries"] = self.config.max_retries
        if not self.config.fallback_mode:
            updates["fallback_selectors"] = []
        if not self.config.enable_keyboard_navigation:
            updates["fallback_events"] = []
        return detection.model_copy(update=updates) if updates else detection
