"""Tests for the template registry and per-user tutorial generation."""

import pytest
from pydantic import ValidationError

from tutorflow.models import ActionKey, StepDefinition, TutorialStepId
from tutorflow.templates import (
    DEFAULT_HELP_MESSAGE,
    TutorialConfigManager,
    TutorialTemplate,
    TutorialVariant,
    UserTraits,
    load_template_from_yaml,
    load_variant_from_yaml,
)

CUSTOM_TEMPLATE = """
id: study_group
name: Study Group Tour
description: Short tour of the social features
target_audience: power_user
steps:
  - id: welcome
    title: Hello
  - id: social_features
    title: Find a group
    required_action: connections_explored
"""

CUSTOM_VARIANT = """
id: study_group_slow
name: Slow Study Group
base_template: study_group
config_overrides:
  default_timeout: 90000
"""


@pytest.fixture
def registry() -> TutorialConfigManager:
    return TutorialConfigManager()


class TestBuiltins:
    """Tests for the shipped templates and variants."""

    def test_builtin_templates(self, registry):
        ids = {t.id for t in registry.get_all_templates()}

        assert ids == {"standard", "quick_start", "accessibility"}

    def test_builtin_variants(self, registry):
        variants = {v.id: v for v in registry.get_all_variants()}

        assert set(variants) == {"fast_paced", "detailed"}
        assert variants["fast_paced"].base_template == "standard"
        assert variants["detailed"].test_group == "detail_test"

    def test_standard_step_order(self, registry):
        """Test the standard tour's step order and required actions."""
        steps = registry.get_template("standard").steps

        assert [s.id.value for s in steps] == [
            "welcome",
            "navigation",
            "task_creation",
            "ai_suggestions",
            "social_features",
            "crashout_room",
            "achievements",
            "completion",
        ]
        assert steps[0].required_action is None
        assert steps[1].required_action is ActionKey.TAB_CLICK
        assert steps[1].action_detection.timeout == 15000
        assert steps[-1].skip_allowed is False

    def test_templates_for_audience(self, registry):
        """Test that templates for everyone are included in every audience."""
        returning = {t.id for t in registry.get_templates_for_audience("returning_user")}
        new = {t.id for t in registry.get_templates_for_audience("new_user")}

        assert returning == {"quick_start", "accessibility"}
        assert new == {"standard", "accessibility"}

    def test_unknown_lookups(self, registry):
        assert registry.get_template("nope") is None
        assert registry.get_variant("nope") is None
        assert registry.get_variants_for_template("quick_start") == []


class TestRegistration:
    """Tests for custom templates and variants."""

    def test_register_template(self, registry):
        template = TutorialTemplate(
            id="mini",
            name="Mini",
            steps=[StepDefinition(id=TutorialStepId.WELCOME, title="Hi")],
        )

        assert registry.register_template(template) is True
        assert registry.register_template(template) is False
        assert registry.get_template("mini") is template

    def test_register_variant_requires_base(self, registry):
        variant = TutorialVariant(id="orphan", name="Orphan", base_template="missing")

        assert registry.register_variant(variant) is False
        assert registry.get_variant("orphan") is None

    def test_variant_rejects_unknown_config_keys(self):
        with pytest.raises(ValidationError):
            TutorialVariant(
                id="bad", name="Bad", base_template="standard", config_overrides={"speed": 2}
            )

    def test_variant_rejects_patch_without_id(self):
        with pytest.raises(ValidationError):
            TutorialVariant(
                id="bad", name="Bad", base_template="standard", step_modifications=[{"duration": 5}]
            )

    def test_variant_rejects_unknown_step_fields(self):
        with pytest.raises(ValidationError):
            TutorialVariant(
                id="bad",
                name="Bad",
                base_template="standard",
                step_modifications=[{"id": "welcome", "colour": "red"}],
            )

    def test_load_directory(self, tmp_path):
        """Test that a variant can build on a template from the same directory."""
        (tmp_path / "a_variant.yaml").write_text(CUSTOM_VARIANT)
        (tmp_path / "b_template.yaml").write_text(CUSTOM_TEMPLATE)

        registry = TutorialConfigManager(templates_dir=tmp_path)

        assert registry.get_template("study_group").target_audience == "power_user"
        assert registry.get_variant("study_group_slow").base_template == "study_group"

    def test_load_directory_invalid_file(self, registry, tmp_path):
        (tmp_path / "broken.yaml").write_text("id: broken\nname: Broken\n")

        with pytest.raises(ValueError, match="broken.yaml"):
            registry.load_directory(tmp_path)


class TestYamlLoading:
    """Tests for loading single YAML files."""

    def test_load_template(self, tmp_path):
        path = tmp_path / "template.yaml"
        path.write_text(CUSTOM_TEMPLATE)

        template = load_template_from_yaml(path)

        assert template.id == "study_group"
        assert template.steps[1].required_action is ActionKey.CONNECTIONS_EXPLORED

    def test_load_variant(self, tmp_path):
        path = tmp_path / "variant.yaml"
        path.write_text(CUSTOM_VARIANT)

        assert load_variant_from_yaml(path).config_overrides == {"default_timeout": 90000}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_template_from_yaml(tmp_path / "missing.yaml")

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ValueError, match="Invalid template YAML"):
            load_template_from_yaml(path)


class TestGeneration:
    """Tests for generate_tutorial_for_user."""

    def test_default_template(self, registry):
        definition = registry.generate_tutorial_for_user("u1")

        assert definition.template_id == "standard"
        assert definition.variant_id is None
        assert definition.config.default_timeout == 30000

    def test_explicit_template(self, registry):
        definition = registry.generate_tutorial_for_user("u1", "quick_start")

        assert definition.template_id == "quick_start"
        assert definition.sequence == [TutorialStepId.WELCOME, TutorialStepId.TASK_CREATION]

    def test_unknown_template(self, registry):
        assert registry.generate_tutorial_for_user("u1", "nope") is None

    def test_custom_default_template(self, registry):
        definition = registry.generate_tutorial_for_user("u1", default_template="accessibility")

        assert definition.template_id == "accessibility"

    def test_assigned_variant_is_applied(self, registry):
        """Test that the variant's config overrides and step patches apply."""
        registry.assign_variant_to_user("u1", "fast_paced")

        definition = registry.generate_tutorial_for_user("u1")

        assert definition.template_id == "standard"
        assert definition.variant_id == "fast_paced"
        assert definition.config.default_timeout == 10000
        assert definition.config.max_retries == 1
        welcome = definition.get_step(TutorialStepId.WELCOME)
        assert welcome.auto_advance is True
        assert welcome.duration == 30
        assert welcome.title == "Welcome to StudySpark!"

    def test_variant_ignored_for_other_template(self, registry):
        registry.assign_variant_to_user("u1", "detailed")

        definition = registry.generate_tutorial_for_user("u1", "quick_start")

        assert definition.variant_id is None
        assert definition.config.default_timeout == 15000

    def test_preferences_apply_last(self, registry):
        """Test that user preferences win over variant overrides."""
        registry.assign_variant_to_user("u1", "detailed")

        definition = registry.generate_tutorial_for_user(
            "u1", user_preferences={"default_timeout": 20000, "enable_analytics": False}
        )

        assert definition.config.default_timeout == 20000
        assert definition.config.max_retries == 5
        assert definition.config.enable_analytics is False

    def test_variant_then_preference_timeout(self, registry):
        registry.assign_variant_to_user("u1", "fast_paced")
        assert registry.generate_tutorial_for_user("u1").config.default_timeout == 10000

        definition = registry.generate_tutorial_for_user(
            "u1", user_preferences={"default_timeout": 45000}
        )

        assert definition.config.default_timeout == 45000

    def test_invalid_preferences(self, registry):
        with pytest.raises(ValueError):
            registry.generate_tutorial_for_user("u1", user_preferences={"default_timeout": -1})

    def test_removed_and_additional_steps(self, registry):
        """Test that variants can drop steps and append new ones."""
        registry.register_variant(
            TutorialVariant(
                id="no_crashout",
                name="No Crashout",
                base_template="standard",
                removed_steps=[TutorialStepId.CRASHOUT_ROOM, TutorialStepId.ACHIEVEMENTS],
                additional_steps=[
                    StepDefinition(id=TutorialStepId.WELCOME, title="Duplicate"),
                ],
            )
        )
        registry.assign_variant_to_user("u1", "no_crashout")

        definition = registry.generate_tutorial_for_user("u1")

        assert TutorialStepId.CRASHOUT_ROOM not in definition.sequence
        assert definition.final_step is TutorialStepId.SOCIAL_FEATURES
        assert definition.get_step(TutorialStepId.WELCOME).title == "Welcome to StudySpark!"

    def test_detection_defaults_filled_from_config(self, registry):
        """Test that steps without explicit timeouts inherit the variant's defaults."""
        registry.assign_variant_to_user("u1", "fast_paced")
        definition = registry.generate_tutorial_for_user("u1")

        ai = definition.detection_for(TutorialStepId.AI_SUGGESTIONS)
        navigation = definition.detection_for(TutorialStepId.NAVIGATION)

        assert ai.timeout == 10000
        assert ai.retries == 1
        assert navigation.timeout == 15000
        assert definition.detection_for(TutorialStepId.WELCOME) is None


class TestAssignment:
    """Tests for variant assignment."""

    def test_assign_unknown_variant(self, registry):
        assert registry.assign_variant_to_user("u1", "nope") is False
        assert registry.get_user_variant("u1") is None

    def test_auto_assign(self, registry):
        """Test the trait priority order."""
        assert (
            registry.auto_assign_variant(
                "a", UserTraits(has_accessibility_needs=True, is_returning_user=True)
            )
            == "accessibility"
        )
        assert registry.auto_assign_variant("b", UserTraits(is_returning_user=True)) == "quick_start"
        assert registry.auto_assign_variant("c", UserTraits(preferred_pace="fast")) == "fast_paced"
        assert registry.auto_assign_variant("d", UserTraits(preferred_pace="slow")) == "detailed"
        assert registry.auto_assign_variant("e", UserTraits()) == "standard"
        assert registry.auto_assign_variant("f") == "standard"

    def test_pace_choices_are_assigned(self, registry):
        registry.auto_assign_variant("c", UserTraits(preferred_pace="fast"))

        assert registry.get_user_variant("c").id == "fast_paced"
        assert registry.get_user_variant("b") is None


class TestAnalytics:
    """Tests for usage and outcome analytics."""

    def test_usage_and_outcomes(self, registry):
        """Test that outcomes are attributed to variants or templates."""
        registry.assign_variant_to_user("u1", "fast_paced")
        registry.assign_variant_to_user("u2", "fast_paced")
        registry.generate_tutorial_for_user("u1")
        registry.generate_tutorial_for_user("u3", "quick_start")
        registry.record_outcome("u1", completed=True, minutes=4.0)
        registry.record_outcome("u2", completed=False, minutes=2.0)
        registry.record_outcome("u3", completed=True, minutes=3.0)
        registry.record_outcome("never-generated", completed=True, minutes=1.0)

        data = registry.get_analytics_data()

        assert data["template_usage"] == {"standard": 1, "quick_start": 1}
        fast = data["variant_performance"]["fast_paced"]
        assert fast["assignments"] == 2
        assert fast["outcomes"] == 2
        assert fast["completion_rate"] == 50.0
        assert fast["average_time"] == 3.0
        assert data["variant_performance"]["detailed"]["outcomes"] == 0
        assert data["template_performance"] == {
            "quick_start": {"outcomes": 1, "completion_rate": 100.0, "average_time": 3.0}
        }

    def test_reassignment_counts_once(self, registry):
        registry.assign_variant_to_user("u1", "detailed")
        registry.assign_variant_to_user("u1", "detailed")

        data = registry.get_analytics_data()

        assert data["variant_performance"]["detailed"]["assignments"] == 1


class TestOptimization:
    """Tests for optimize_template."""

    def test_unknown_template(self, registry):
        assert registry.optimize_template("nope", increase_timeouts=True) is False

    def test_increase_timeouts(self, registry):
        registry.optimize_template("quick_start", increase_timeouts=True)

        assert registry.get_template("quick_start").config.default_timeout == 22500

    def test_add_more_help(self, registry):
        """Test that only steps without help get the generic message."""
        registry.optimize_template("standard", add_more_help=True)
        steps = {s.id: s for s in registry.get_template("standard").steps}

        assert steps[TutorialStepId.NAVIGATION].contextual_help.message == DEFAULT_HELP_MESSAGE
        assert steps[TutorialStepId.WELCOME].contextual_help.message.startswith("Click on me")

    def test_simplify_steps(self, registry):
        registry.optimize_template("standard", simplify_steps=True)

        for step in registry.get_template("standard").steps:
            assert len(step.message) <= 103

    def test_improve_accessibility(self, registry):
        registry.optimize_template("standard", improve_accessibility=True)
        template = registry.get_template("standard")
        steps = {s.id: s for s in template.steps}

        assert template.config.enable_accessibility is True
        assert steps[TutorialStepId.AI_SUGGESTIONS].accessibility.aria_label == (
            "AI-Powered Study Help tutorial step"
        )
        assert steps[TutorialStepId.WELCOME].accessibility.keyboard_shortcut == "Enter"

    def test_generation_uses_optimized_template(self, registry):
        registry.optimize_template("quick_start", increase_timeouts=True)

        definition = registry.generate_tutorial_for_user("u1", "quick_start")

        assert definition.config.default_timeout == 22500
