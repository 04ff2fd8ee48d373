"""One user's tutorial run.

``TutorialSession`` wires the template registry, the state machine and the
detector together: it generates the user's tutorial, creates or resumes
progress, arms detection for the active step, re-arms whenever the step
changes, and acts on escalations when asked to recover.
"""

import asyncio
import logging
from typing import Any

from .clock import AsyncioClock, Clock, TimerHandle
from .detection import ActionDetector, Escalation
from .errors import ErrorCode, ErrorHandler, RecoveryAction
from .manager import TutorialManager
from .models import ActionKey, TutorialProgress, TutorialResult, TutorialStepId
from .ports import ProgressStore, UISurface
from .settings import EngineSettings
from .store import JsonFileProgressStore
from .surface import HtmlSurface
from .templates import TutorialConfigManager, UserTraits

logger = logging.getLogger(__name__)


class TutorialSession:
    """Drives the tutorial of a single user.

    Args:
        manager: State machine.
        detector: Action detector owned by this session.
        config_manager: Template and variant registry.
        clock: Timer source for auto-advancing steps.
        settings: Engine settings.
    """

    def __init__(
        self,
        manager: TutorialManager,
        detector: ActionDetector,
        config_manager: TutorialConfigManager,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self.manager = manager
        self.detector = detector
        self.config_manager = config_manager
        self._clock = clock or AsyncioClock()
        self._settings = settings or manager.settings
        self.user_id: str | None = None
        self.pending_escalation: Escalation | None = None
        self._armed_action: ActionKey | None = None
        self._auto_timer: TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._active = False

        detector.on_progress = self._on_progress
        detector.on_escalation = self._on_escalation

    @property
    def armed_action(self) -> ActionKey | None:
        return self._armed_action

    async def start(
        self,
        user_id: str,
        template_id: str | None = None,
        preferences: dict[str, Any] | None = None,
        traits: UserTraits | None = None,
    ) -> TutorialResult[TutorialProgress]:
        """Generate the user's tutorial and pick up where they left off.

        Progress left at a step the generated tutorial does not have is
        moved to the first step the user has not completed yet.

        Args:
            user_id: User to run the tutorial for.
            template_id: Explicit template choice.
            preferences: Partial TutorialConfig applied last.
            traits: User characteristics used for automatic assignment when
                no template is given.

        Returns:
            Result carrying the user's progress. Users who already finished
            or skipped the tutorial get their progress back without any
            detection being armed.
        """
        self.stop_detection()
        self.user_id = user_id
        self._active = True

        if traits is not None and template_id is None:
            choice = self.config_manager.auto_assign_variant(user_id, traits)
            if self.config_manager.get_template(choice) is not None:
                template_id = choice

        try:
            definition = self.config_manager.generate_tutorial_for_user(
                user_id,
                template_id,
                preferences,
                default_template=self._settings.default_template,
            )
        except ValueError as e:
            return self._failure(ErrorCode.INITIALIZATION_FAILED, str(e))
        if definition is None:
            return self._failure(
                ErrorCode.INITIALIZATION_FAILED, f"Unknown tutorial template: {template_id}"
            )
        self.manager.set_definition(user_id, definition)

        if not await self.manager.should_show_tutorial(user_id):
            logger.info("Tutorial already finished for %s", user_id)
            return TutorialResult(success=True, data=await self.manager.get_progress(user_id))

        result = await self.manager.initialize_tutorial(user_id)
        if not result.success:
            return result
        result = await self.manager.align_to_definition(user_id)
        if not result.success:
            return result

        self.detector.initialize(user_id)
        progress = await self.manager.resume_tutorial(user_id)
        self.arm_current_step(progress)
        return TutorialResult(success=True, data=progress)

    def arm_current_step(self, progress: TutorialProgress | None) -> ActionKey | None:
        """Arm detection for the active step of ``progress``.

        Returns:
            The armed action, or None when the step needs no detection.
        """
        self._cancel_auto_advance()
        if self._armed_action is not None:
            self.detector.disarm(self._armed_action)
            self._armed_action = None

        if not self._active or progress is None or progress.is_terminal or self.user_id is None:
            return None

        definition = self.manager.definition_for(self.user_id)
        step = definition.get_step(progress.current_step)
        if step is None:
            return None

        if step.required_action is None:
            if step.auto_advance:
                self._auto_timer = self._clock.call_later(
                    step.duration, lambda: self._spawn(self._auto_advance(step.id))
                )
            return None
        if step.required_action in progress.completed_actions:
            return None

        config = definition.detection_for(step.id)
        self.detector.setup_action_detection(step.required_action, config, step.id)
        self._armed_action = step.required_action
        return step.required_action

    async def next_step(self) -> TutorialResult[TutorialProgress]:
        """Advance from the active step, e.g. when the user presses Next."""
        return await self._transition(self.manager.advance_to_next_step)

    async def skip_step(self) -> TutorialResult[TutorialProgress]:
        return await self._transition(self.manager.skip_step)

    async def skip_tutorial(self) -> TutorialResult[TutorialProgress]:
        user_id = self._require_user()
        result = await self.manager.skip_tutorial(user_id)
        if result.success:
            self.stop_detection()
        return result

    async def restart(self) -> TutorialResult[TutorialProgress]:
        """Reset progress to the first step and re-arm detection."""
        user_id = self._require_user()
        result = await self.manager.restart_tutorial(user_id)
        if result.success:
            self.pending_escalation = None
            self._active = True
            self.detector.initialize(user_id)
            self.arm_current_step(result.data)
        return result

    async def recover(self) -> TutorialResult[TutorialProgress] | None:
        """Act on the pending escalation.

        A recommended step skip leaves the step through the skip path; with
        no recommendation, detection of the action is re-armed.

        Returns:
            The skip result, or None when nothing was pending or detection
            was re-armed.
        """
        escalation = self.pending_escalation
        if escalation is None:
            return None
        self.pending_escalation = None

        if escalation.decision.recovery_action is RecoveryAction.SKIP_STEP and escalation.step:
            logger.info("Skipping %s after detection timeout", escalation.step.value)
            return await self._transition(self.manager.skip_step, escalation.step)

        if self.detector.retry_action(escalation.action):
            self._armed_action = escalation.action
        return None

    async def wait_idle(self) -> None:
        """Wait for auto-advances and detector writes that are in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.detector.wait_idle()

    async def stop(self) -> None:
        """Tear down detection and wait for in-flight writes."""
        self.stop_detection()
        await self.wait_idle()
        if self.user_id is not None:
            self.manager.release_user(self.user_id)

    def stop_detection(self) -> None:
        self._active = False
        self._cancel_auto_advance()
        self._armed_action = None
        self.detector.cleanup()

    # -- internals -----------------------------------------------------------

    async def _transition(
        self, operation, step: TutorialStepId | None = None
    ) -> TutorialResult[TutorialProgress]:
        user_id = self._require_user()
        if step is None:
            progress = await self.manager.get_progress(user_id)
            if progress is None:
                return self._failure(ErrorCode.INVALID_STATE, f"No tutorial progress for {user_id}")
            step = progress.current_step

        result = await operation(user_id, step)
        if result.success:
            self.arm_current_step(result.data)
        return result

    async def _auto_advance(self, step: TutorialStepId) -> None:
        self._auto_timer = None
        result = await self._transition(self.manager.advance_to_next_step, step)
        if not result.success:
            logger.debug("Auto-advance from %s skipped: %s", step.value, result.error.message)

    def _on_progress(self, progress: TutorialProgress | None) -> None:
        self.arm_current_step(progress)

    def _on_escalation(self, escalation: Escalation) -> None:
        self.pending_escalation = escalation
        self._armed_action = None

    def _cancel_auto_advance(self) -> None:
        if self._auto_timer is not None:
            self._auto_timer.cancel()
            self._auto_timer = None

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _require_user(self) -> str:
        if self.user_id is None:
            raise RuntimeError("Tutorial session has not been started")
        return self.user_id

    def _failure(self, code: ErrorCode, message: str) -> TutorialResult:
        error = self.manager.error_handler.create_error(code, message)
        return TutorialResult(success=False, error=error)


def create_session(
    settings: EngineSettings | None = None,
    store: ProgressStore | None = None,
    surface: UISurface | None = None,
    clock: Clock | None = None,
    config_manager: TutorialConfigManager | None = None,
) -> TutorialSession:
    """Build a session with default collaborators for anything not given.

    Args:
        settings: Engine settings. Defaults to EngineSettings().
        store: Progress store. Defaults to a JSON file store under
            ``settings.progress_dir``.
        surface: User-interface surface. Defaults to an empty HtmlSurface.
        clock: Time source. Defaults to AsyncioClock().
        config_manager: Template registry. Defaults to the built-ins plus
            ``settings.templates_dir``.

    Raises:
        ValueError: If the default template is unknown.
    """
    settings = settings or EngineSettings()
    clock = clock or AsyncioClock()
    config_manager = config_manager or TutorialConfigManager(settings.templates_dir)
    definition = config_manager.build_definition(settings.default_template)
    if definition is None:
        raise ValueError(f"Unknown default template: {settings.default_template}")

    error_handler = ErrorHandler(max_history=settings.error_history_size)
    manager = TutorialManager(
        store or JsonFileProgressStore(settings.progress_dir),
        definition,
        error_handler=error_handler,
        clock=clock,
        settings=settings,
    )
    detector = ActionDetector(
        manager,
        surface or HtmlSurface(),
        error_handler=error_handler,
        clock=clock,
        settings=settings,
    )
    return TutorialSession(manager, detector, config_manager, clock=clock, settings=settings)
