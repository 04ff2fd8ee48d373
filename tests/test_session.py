"""Tests for the per-user tutorial session."""

import pytest

from tutorflow.errors import ErrorCode
from tutorflow.models import ActionKey, TutorialStepId
from tutorflow.session import TutorialSession, create_session
from tutorflow.store import InMemoryProgressStore, JsonFileProgressStore
from tutorflow.templates import UserTraits

USER = "user-1"


@pytest.fixture
def session(manager, detector, config_manager, clock, settings) -> TutorialSession:
    return TutorialSession(manager, detector, config_manager, clock=clock, settings=settings)


class TestStart:
    """Tests for starting a session."""

    async def test_start_new_user(self, session, detector):
        """Test that a new user starts at the welcome step with listeners installed."""
        result = await session.start(USER)

        assert result.success is True
        assert result.data.current_step is TutorialStepId.WELCOME
        assert session.armed_action is None
        assert detector.get_detection_status().global_listeners == 6

    async def test_start_unknown_template(self, session):
        result = await session.start(USER, template_id="nope")

        assert result.success is False
        assert result.error.code is ErrorCode.INITIALIZATION_FAILED

    async def test_start_invalid_preferences(self, session):
        result = await session.start(USER, preferences={"max_retries": -3})

        assert result.error.code is ErrorCode.INITIALIZATION_FAILED

    async def test_start_finished_user(self, session, manager, detector):
        """Test that a user who skipped the tutorial gets no detection."""
        await manager.skip_tutorial(USER)

        result = await session.start(USER)

        assert result.success is True
        assert result.data.is_skipped is True
        assert session.armed_action is None
        assert detector.get_detection_status().global_listeners == 0

    async def test_start_resumes_satisfied_steps(self, session, manager):
        """Test that a returning user skips past steps whose action is recorded."""
        await manager.initialize_tutorial(USER)
        await manager.advance_to_next_step(USER, TutorialStepId.WELCOME)
        await manager.mark_action_completed(USER, ActionKey.TAB_CLICK)

        result = await session.start(USER)

        assert result.data.current_step is TutorialStepId.TASK_CREATION
        assert session.armed_action is ActionKey.TASK_CREATED

    async def test_start_with_traits(self, session, manager):
        """Test that user traits pick the tutorial when no template is given."""
        await session.start(USER, traits=UserTraits(is_returning_user=True))

        assert manager.definition_for(USER).template_id == "quick_start"

    async def test_switching_template_moves_to_first_open_step(self, session):
        """Test that a step missing from the new template does not strand the user."""
        await session.start(USER)
        await session.next_step()
        await session.stop()

        result = await session.start(USER, traits=UserTraits(is_returning_user=True))

        assert result.data.current_step is TutorialStepId.TASK_CREATION
        assert session.armed_action is ActionKey.TASK_CREATED
        assert (await session.next_step()).success is True

    async def test_switching_template_after_covering_it_completes(self, session, detector):
        """Test that a new template whose steps are all done finishes the tutorial."""
        await session.start(USER)
        for _ in range(3):
            await session.next_step()
        await session.stop()

        result = await session.start(USER, traits=UserTraits(is_returning_user=True))

        assert result.data.current_step is TutorialStepId.COMPLETION
        assert result.data.is_completed is True
        assert session.armed_action is None
        assert detector.get_detection_status().active_actions == []

    async def test_start_with_pace_trait_applies_variant(self, session, manager):
        await session.start(USER, traits=UserTraits(preferred_pace="fast"))

        definition = manager.definition_for(USER)
        assert definition.template_id == "standard"
        assert definition.variant_id == "fast_paced"


class TestStepping:
    """Tests for moving through steps."""

    async def test_next_step_arms_detection(self, session, detector):
        await session.start(USER)

        result = await session.next_step()

        assert result.data.current_step is TutorialStepId.NAVIGATION
        assert session.armed_action is ActionKey.TAB_CLICK
        assert detector.get_detection_status().active_actions == ["tab_click"]

    async def test_detected_action_advances_and_rearms(self, session, surface, detector):
        """Test that a detected action moves to the next step and arms its action."""
        await session.start(USER)
        await session.next_step()

        surface.dispatch("click", "#tab-tasks")
        await session.wait_idle()

        progress = await session.manager.get_progress(USER)
        assert progress.current_step is TutorialStepId.TASK_CREATION
        assert session.armed_action is ActionKey.TASK_CREATED
        assert detector.get_detection_status().active_actions == ["task_created"]

    async def test_task_creation_by_keyboard(self, session, surface):
        """Test the keyboard fallback on the task creation step."""
        await session.start(USER)
        await session.next_step()
        surface.dispatch("click", "#tab-tasks")
        await session.wait_idle()

        surface.dispatch("keydown", "#task-input", key="Enter")
        await session.wait_idle()

        progress = await session.manager.get_progress(USER)
        assert progress.current_step is TutorialStepId.AI_SUGGESTIONS
        assert session.armed_action is ActionKey.AI_INTERACTION

    async def test_skip_step(self, session):
        await session.start(USER)
        await session.next_step()

        result = await session.skip_step()

        assert result.data.current_step is TutorialStepId.TASK_CREATION
        assert session.armed_action is ActionKey.TASK_CREATED

    async def test_skip_tutorial_stops_detection(self, session, detector, clock):
        await session.start(USER)
        await session.next_step()

        result = await session.skip_tutorial()

        assert result.data.is_skipped is True
        assert session.armed_action is None
        assert detector.get_detection_status().global_listeners == 0
        assert clock.pending == 0

    async def test_restart(self, session, detector):
        await session.start(USER)
        await session.next_step()
        await session.skip_tutorial()

        result = await session.restart()

        assert result.data.current_step is TutorialStepId.WELCOME
        assert detector.get_detection_status().global_listeners == 6

    async def test_operations_before_start(self, session):
        with pytest.raises(RuntimeError):
            await session.next_step()

    async def test_last_step_completes_and_disarms(self, session, manager):
        """Test that finishing the tutorial arms nothing."""
        await session.start(USER)
        for _ in range(7):
            await session.skip_step()

        progress = await manager.get_progress(USER)
        assert progress.is_completed is True
        assert session.armed_action is None


class TestAutoAdvance:
    """Tests for steps that advance on their own."""

    async def test_auto_advance_after_duration(self, session, clock):
        """Test that an auto-advancing step moves on after its duration."""
        await session.start(USER, template_id="quick_start")

        clock.advance(29)
        await session.wait_idle()
        assert (await session.manager.get_progress(USER)).current_step is TutorialStepId.WELCOME

        clock.advance(1)
        await session.wait_idle()

        progress = await session.manager.get_progress(USER)
        assert progress.current_step is TutorialStepId.TASK_CREATION
        assert session.armed_action is ActionKey.TASK_CREATED

    async def test_manual_next_cancels_auto_advance(self, session, clock):
        await session.start(USER, template_id="quick_start")

        await session.next_step()
        clock.advance(30)
        await session.wait_idle()

        progress = await session.manager.get_progress(USER)
        assert progress.current_step is TutorialStepId.TASK_CREATION
        assert progress.completed_steps == [TutorialStepId.WELCOME]


class TestRecovery:
    """Tests for acting on escalations."""

    async def test_escalation_then_skip(self, session, clock, error_handler):
        """Test that an exhausted detection can be recovered by skipping the step."""
        await session.start(USER)
        await session.next_step()

        for _ in range(3):
            clock.advance(15)
        await session.wait_idle()

        escalation = session.pending_escalation
        assert escalation is not None
        assert escalation.action is ActionKey.TAB_CLICK
        assert session.armed_action is None
        assert [e.code for e in error_handler.get_error_history()] == [ErrorCode.ACTION_TIMEOUT]

        result = await session.recover()

        assert result.data.current_step is TutorialStepId.TASK_CREATION
        assert session.pending_escalation is None
        assert session.armed_action is ActionKey.TASK_CREATED

    async def test_recover_without_escalation(self, session):
        await session.start(USER)

        assert await session.recover() is None

    async def test_recover_rearms_when_step_unknown(self, session, detector, clock):
        """Test that an escalation without a step re-arms detection."""
        await session.start(USER)
        await session.next_step()
        for _ in range(3):
            clock.advance(15)
        await session.wait_idle()
        session.pending_escalation.step = None

        assert await session.recover() is None

        assert session.armed_action is ActionKey.TAB_CLICK
        assert detector.get_detection_status().active_actions == ["tab_click"]

    async def test_stop(self, session, manager, detector, clock):
        await session.start(USER, template_id="quick_start")

        await session.stop()

        assert clock.pending == 0
        assert detector.get_detection_status().global_listeners == 0
        assert manager.definition_for(USER).template_id == "standard"


class TestCreateSession:
    """Tests for the session factory."""

    def test_defaults(self, settings):
        session = create_session(settings)

        assert isinstance(session.manager._store, JsonFileProgressStore)
        assert session.manager.definition_for().template_id == "standard"
        assert session.manager.settings is settings

    def test_custom_store(self, settings):
        store = InMemoryProgressStore()

        session = create_session(settings, store=store)

        assert session.manager._store is store

    def test_unknown_default_template(self, settings):
        settings = settings.model_copy(update={"default_template": "nope"})

        with pytest.raises(ValueError, match="nope"):
            create_session(settings)

    async def test_end_to_end_with_file_store(self, settings, clock, surface):
        """Test a full run persisted to disk."""
        session = create_session(settings, surface=surface, clock=clock)

        await session.start(USER)
        await session.next_step()
        surface.dispatch("click", "#tab-home")
        await session.wait_idle()

        progress_file = settings.progress_dir / "user-1.json"
        assert progress_file.exists()
        progress = await session.manager.get_progress(USER)
        assert progress.current_step is TutorialStepId.TASK_CREATION
        assert (settings.progress_dir / "events.jsonl").exists()
