"""Tutorial templates, variants and per-user tutorial generation.

A template is a named, ordered list of steps plus a base
:class:`~tutorflow.models.TutorialConfig`. A variant patches a template for
A/B testing: config overrides, step patches keyed by step id, and steps to
add or remove. Built-in templates and variants ship as YAML files under
``tutorflow/data``; custom ones can be loaded from YAML or registered
directly.
"""

import importlib.resources
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .definition import TutorialDefinition
from .models import (
    AccessibilityHints,
    ContextualHelp,
    StepDefinition,
    TutorialConfig,
    TutorialStepId,
)

logger = logging.getLogger(__name__)

Audience = Literal["new_user", "returning_user", "power_user", "all"]

DEFAULT_HELP_MESSAGE = "Need help? Click on Stu for guidance!"
SIMPLIFIED_MESSAGE_LENGTH = 100


class TutorialTemplate(BaseModel):
    """A named tutorial: ordered steps plus a base config."""

    id: str = Field(description="Unique template identifier")
    name: str = Field(description="Human-readable template name")
    description: str = Field(default="", description="What the tutorial covers")
    steps: list[StepDefinition] = Field(description="Ordered steps")
    config: TutorialConfig = Field(default_factory=TutorialConfig)
    target_audience: Audience = Field(default="new_user")
    estimated_duration: int = Field(default=10, ge=0, description="Estimated minutes")


class TutorialVariant(BaseModel):
    """A set of modifications applied to a base template."""

    id: str = Field(description="Unique variant identifier")
    name: str = Field(description="Human-readable variant name")
    description: str = ""
    base_template: str = Field(description="Template the variant modifies")
    config_overrides: dict[str, Any] = Field(default_factory=dict)
    step_modifications: list[dict[str, Any]] = Field(
        default_factory=list, description="Partial step patches, each keyed by 'id'"
    )
    additional_steps: list[StepDefinition] = Field(default_factory=list)
    removed_steps: list[TutorialStepId] = Field(default_factory=list)
    test_group: str | None = None

    @field_validator("config_overrides")
    @classmethod
    def _known_config_keys(cls, value: dict[str, Any]) -> dict[str, Any]:
        unknown = set(value) - set(TutorialConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown config override keys: {sorted(unknown)}")
        return value

    @field_validator("step_modifications")
    @classmethod
    def _patches_have_ids(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for patch in value:
            if "id" not in patch:
                raise ValueError("Every step modification needs an 'id'")
            TutorialStepId(patch["id"])
            unknown = set(patch) - set(StepDefinition.model_fields)
            if unknown:
                raise ValueError(f"Unknown step fields in modification: {sorted(unknown)}")
        return value


class UserTraits(BaseModel):
    """Characteristics used to pick a tutorial for a user."""

    is_returning_user: bool = False
    has_accessibility_needs: bool = False
    preferred_pace: Literal["slow", "normal", "fast"] | None = None
    device_type: Literal["mobile", "tablet", "desktop"] | None = None


def load_template_from_yaml(yaml_path: Path) -> TutorialTemplate:
    """Load a template from a YAML file.

    Args:
        yaml_path: Path to YAML file

    Returns:
        Loaded template

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If YAML is invalid
    """
    return TutorialTemplate(**_read_yaml(yaml_path, "template"))


def load_variant_from_yaml(yaml_path: Path) -> TutorialVariant:
    """Load a variant from a YAML file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If YAML is invalid
    """
    return TutorialVariant(**_read_yaml(yaml_path, "variant"))


def _read_yaml(yaml_path: Path, kind: str) -> dict[str, Any]:
    if not yaml_path.exists():
        raise FileNotFoundError(f"{kind.capitalize()} file not found: {yaml_path}")

    with open(yaml_path) as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Invalid {kind} YAML: {yaml_path}")
    return data


def _builtin_documents(kind: str) -> list[dict[str, Any]]:
    directory = importlib.resources.files("tutorflow") / "data" / kind
    documents = []
    for item in sorted(directory.iterdir(), key=lambda p: p.name):
        if item.name.endswith(".yaml"):
            documents.append(yaml.safe_load(item.read_text()))
    return documents


class TutorialConfigManager:
    """Registry of templates and variants with per-user generation.

    Args:
        templates_dir: Optional directory of custom ``*.yaml`` files. Files
            with a ``base_template`` key are registered as variants, all
            others as templates.
    """

    def __init__(self, templates_dir: Path | None = None) -> None:
        self._templates: dict[str, TutorialTemplate] = {}
        self._variants: dict[str, TutorialVariant] = {}
        self._assignments: dict[str, str] = {}
        self._template_usage: defaultdict[str, int] = defaultdict(int)
        self._variant_assignments: defaultdict[str, int] = defaultdict(int)
        self._outcomes: defaultdict[str, list[tuple[bool, float]]] = defaultdict(list)
        self._generated: dict[str, str] = {}

        for data in _builtin_documents("templates"):
            self.register_template(TutorialTemplate(**data))
        for data in _builtin_documents("variants"):
            self.register_variant(TutorialVariant(**data))

        if templates_dir is not None:
            self.load_directory(templates_dir)

    # -- catalog -------------------------------------------------------------

    def get_template(self, template_id: str) -> TutorialTemplate | None:
        return self._templates.get(template_id)

    def get_all_templates(self) -> list[TutorialTemplate]:
        return list(self._templates.values())

    def get_templates_for_audience(self, audience: str) -> list[TutorialTemplate]:
        """Templates aimed at ``audience``. Templates for ``all`` always match."""
        return [
            t
            for t in self._templates.values()
            if t.target_audience == audience or t.target_audience == "all"
        ]

    def get_variant(self, variant_id: str) -> TutorialVariant | None:
        return self._variants.get(variant_id)

    def get_all_variants(self) -> list[TutorialVariant]:
        return list(self._variants.values())

    def get_variants_for_template(self, template_id: str) -> list[TutorialVariant]:
        return [v for v in self._variants.values() if v.base_template == template_id]

    def register_template(self, template: TutorialTemplate) -> bool:
        """Register a custom template.

        Returns:
            False, without changing anything, if the id is already taken.
        """
        if template.id in self._templates:
            return False
        self._templates[template.id] = template
        logger.debug("Registered tutorial template %s", template.id)
        return True

    def register_variant(self, variant: TutorialVariant) -> bool:
        """Register a custom variant.

        Returns:
            False if the id is taken or the base template is unknown.
        """
        if variant.id in self._variants:
            return False
        if variant.base_template not in self._templates:
            logger.warning(
                "Variant %s refers to unknown template %s", variant.id, variant.base_template
            )
            return False
        self._variants[variant.id] = variant
        logger.debug("Registered tutorial variant %s", variant.id)
        return True

    def load_directory(self, directory: Path) -> int:
        """Register every template and variant YAML file in ``directory``.

        Templates are registered before variants so that a variant can build
        on a template from the same directory.

        Returns:
            Number of newly registered templates and variants.
        """
        templates: list[TutorialTemplate] = []
        variants: list[TutorialVariant] = []
        for path in sorted(directory.glob("*.yaml")):
            data = _read_yaml(path, "template")
            try:
                if "base_template" in data:
                    variants.append(TutorialVariant(**data))
                else:
                    templates.append(TutorialTemplate(**data))
            except ValidationError as e:
                raise ValueError(f"Invalid tutorial file {path}: {e}") from e

        registered = sum(self.register_template(t) for t in templates)
        registered += sum(self.register_variant(v) for v in variants)
        logger.info("Loaded %d custom tutorial definitions from %s", registered, directory)
        return registered

    # -- assignment ----------------------------------------------------------

    def assign_variant_to_user(self, user_id: str, variant_id: str) -> bool:
        if variant_id not in self._variants:
            return False
        if self._assignments.get(user_id) != variant_id:
            self._variant_assignments[variant_id] += 1
        self._assignments[user_id] = variant_id
        return True

    def get_user_variant(self, user_id: str) -> TutorialVariant | None:
        variant_id = self._assignments.get(user_id)
        return self._variants.get(variant_id) if variant_id else None

    def auto_assign_variant(self, user_id: str, traits: UserTraits | None = None) -> str:
        """Pick a tutorial for a user from their characteristics.

        Accessibility needs take priority, then returning users, then pace.
        Pace choices are variants and are assigned to the user; the other
        outcomes are template ids.

        Returns:
            A template or variant id.
        """
        traits = traits or UserTraits()
        if traits.has_accessibility_needs:
            return "accessibility"
        if traits.is_returning_user:
            return "quick_start"
        if traits.preferred_pace == "fast" and self.assign_variant_to_user(user_id, "fast_paced"):
            return "fast_paced"
        if traits.preferred_pace == "slow" and self.assign_variant_to_user(user_id, "detailed"):
            return "detailed"
        return "standard"

    # -- generation ----------------------------------------------------------

    def build_definition(self, template_id: str) -> TutorialDefinition | None:
        """Definition of a template as-is, without any user overlays."""
        template = self.get_template(template_id)
        if template is None:
            return None
        return TutorialDefinition(
            template_id=template.id, steps=tuple(template.steps), config=template.config
        )

    def generate_tutorial_for_user(
        self,
        user_id: str,
        template_id: str | None = None,
        user_preferences: dict[str, Any] | None = None,
        default_template: str = "standard",
    ) -> TutorialDefinition | None:
        """Build the resolved tutorial for a user.

        The template is ``template_id`` if given, else the base of the user's
        assigned variant, else ``default_template``. The assigned variant is
        applied only when it is based on that template. Config precedence is
        template defaults, then variant overrides, then ``user_preferences``.

        Args:
            user_id: User to generate for.
            template_id: Explicit template choice.
            user_preferences: Partial TutorialConfig applied last.
            default_template: Template used when nothing else selects one.

        Returns:
            The resolved definition, or None if the template is unknown.

        Raises:
            ValueError: If preferences are not valid config values, or the
                modifications leave no steps.
        """
        variant = self.get_user_variant(user_id)
        if template_id is None:
            template_id = variant.base_template if variant is not None else default_template
        template = self.get_template(template_id)
        if template is None:
            logger.warning("Unknown tutorial template %s for %s", template_id, user_id)
            return None
        if variant is not None and variant.base_template != template.id:
            variant = None

        config = template.config
        steps = list(template.steps)
        if variant is not None:
            config = _overlay(config, variant.config_overrides)
            steps = _apply_step_modifications(steps, variant)
        if user_preferences:
            config = _overlay(config, user_preferences)

        self._template_usage[template.id] += 1
        self._generated[user_id] = template.id
        return TutorialDefinition(
            template_id=template.id,
            steps=tuple(steps),
            config=config,
            variant_id=variant.id if variant is not None else None,
        )

    # -- analytics -----------------------------------------------------------

    def record_outcome(self, user_id: str, completed: bool, minutes: float) -> None:
        """Record how a user's tutorial ended.

        The outcome is attributed to the user's variant, or to the template
        last generated for them.
        """
        variant = self.get_user_variant(user_id)
        key = variant.id if variant is not None else self._generated.get(user_id)
        if key is None:
            logger.debug("No tutorial generated for %s; outcome not recorded", user_id)
            return
        self._outcomes[key].append((completed, minutes))

    def get_analytics_data(self) -> dict[str, Any]:
        """Template usage and per-variant performance from recorded activity."""
        variant_performance = {}
        for variant_id in self._variants:
            stats = self._outcome_stats(variant_id)
            stats["assignments"] = self._variant_assignments.get(variant_id, 0)
            variant_performance[variant_id] = stats

        return {
            "template_usage": dict(self._template_usage),
            "template_performance": {
                template_id: self._outcome_stats(template_id)
                for template_id in self._templates
                if template_id in self._outcomes
            },
            "variant_performance": variant_performance,
        }

    def _outcome_stats(self, key: str) -> dict[str, Any]:
        outcomes = self._outcomes.get(key, [])
        if not outcomes:
            return {"outcomes": 0, "completion_rate": 0.0, "average_time": 0.0}
        completed = sum(1 for done, _ in outcomes if done)
        return {
            "outcomes": len(outcomes),
            "completion_rate": round(completed / len(outcomes) * 100, 1),
            "average_time": round(sum(m for _, m in outcomes) / len(outcomes), 1),
        }

    # -- optimization --------------------------------------------------------

    def optimize_template(
        self,
        template_id: str,
        increase_timeouts: bool = False,
        add_more_help: bool = False,
        simplify_steps: bool = False,
        improve_accessibility: bool = False,
    ) -> bool:
        """Rewrite a registered template in place.

        Args:
            template_id: Template to change.
            increase_timeouts: Multiply the default timeout by 1.5.
            add_more_help: Give steps without contextual help a generic one.
            simplify_steps: Truncate long step messages.
            improve_accessibility: Enable accessibility flags and add hints
                to steps without any.

        Returns:
            False if the template is unknown.
        """
        template = self._templates.get(template_id)
        if template is None:
            return False

        config = template.config
        steps = list(template.steps)

        if increase_timeouts:
            config = config.model_copy(
                update={"default_timeout": int(config.default_timeout * 1.5)}
            )

        if add_more_help:
            steps = [
                s
                if s.contextual_help is not None
                else s.model_copy(
                    update={"contextual_help": ContextualHelp(message=DEFAULT_HELP_MESSAGE)}
                )
                for s in steps
            ]

        if simplify_steps:
            steps = [
                s.model_copy(update={"message": s.message[:SIMPLIFIED_MESSAGE_LENGTH] + "..."})
                if len(s.message) > SIMPLIFIED_MESSAGE_LENGTH
                else s
                for s in steps
            ]

        if improve_accessibility:
            config = config.model_copy(
                update={"enable_accessibility": True, "enable_keyboard_navigation": True}
            )
            steps = [
                s
                if s.accessibility is not None
                else s.model_copy(
                    update={
                        "accessibility": AccessibilityHints(
                            aria_label=f"{s.title} tutorial step",
                            screen_reader_text=f"{s.description}. Press Enter to continue.",
                        )
                    }
                )
                for s in steps
            ]

        self._templates[template_id] = template.model_copy(update={"config": config, "steps": steps})
        logger.info("Optimized tutorial template %s", template_id)
        return True


def _overlay(config: TutorialConfig, patch: dict[str, Any]) -> TutorialConfig:
    try:
        return TutorialConfig.model_validate({**config.model_dump(), **patch})
    except ValidationError as e:
        raise ValueError(f"Invalid tutorial config values: {e}") from e


def _apply_step_modifications(
    steps: list[StepDefinition], variant: TutorialVariant
) -> list[StepDefinition]:
    patches = {TutorialStepId(p["id"]): p for p in variant.step_modifications}
    patched = [
        StepDefinition.model_validate({**s.model_dump(), **patches[s.id]}) if s.id in patches else s
        for s in steps
    ]
    removed = set(variant.removed_steps)
    patched = [s for s in patched if s.id not in removed]

    existing = {s.id for s in patched}
    for extra in variant.additional_steps:
        if extra.id in existing:
            logger.warning("Variant %s adds duplicate step %s; ignored", variant.id, extra.id.value)
            continue
        patched.append(extra)
        existing.add(extra.id)
    return patched
