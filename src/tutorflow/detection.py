"""Action detection engine.

Given an :class:`~tutorflow.models.ActionDetectionConfig`, the detector arms
several strategies at once and reports the first success exactly once per
arm cycle:

- primary interaction listening (configured events, primary selectors)
- fallback interaction listening (fallback events, fallback selectors)
- an out-of-band signal (``custom_event_name``)
- change-notification watching of a content region
- periodic polling of the same structural predicate

Each arm cycle owns a flat list of unsubscribe/cancel handles. Whatever
strategy fires first, or the timeout, releases every handle of the cycle.
A timeout with retry budget left re-arms with fresh timers; an exhausted
budget is escalated to the error handler, whose decision governs what
happens next.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any

from .clock import AsyncioClock, Clock, TimerHandle
from .errors import ErrorCode, ErrorHandler, RecoveryDecision, TutorialError
from .manager import TutorialManager
from .models import ActionDetectionConfig, ActionKey, TutorialProgress, TutorialStepId, parse_step
from .ports import UIEvent, UISurface, Unsubscribe
from .settings import EngineSettings

logger = logging.getLogger(__name__)

# Process-wide signals the product emits when an action happens outside any
# observable interaction. Each one only completes an action that is armed.
DEFAULT_ACTION_SIGNALS: dict[ActionKey, str] = {
    ActionKey.TAB_CLICK: "tutorialTabChange",
    ActionKey.TASK_CREATED: "taskCreated",
    ActionKey.AI_INTERACTION: "aiInteraction",
    ActionKey.CONNECTIONS_EXPLORED: "connectionsExplored",
    ActionKey.CRASHOUT_VISITED: "crashoutVisited",
    ActionKey.ACHIEVEMENTS_VIEWED: "achievementsViewed",
}

# Dashboard tabs whose selection also satisfies a feature-exploration action.
DEFAULT_TAB_ACTIONS: dict[int, ActionKey] = {
    0: ActionKey.CONNECTIONS_EXPLORED,
    3: ActionKey.CRASHOUT_VISITED,
    4: ActionKey.ACHIEVEMENTS_VIEWED,
}


class DetectionState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"


@dataclass
class Escalation:
    """An exhausted detection handed to the error handler, with its verdict."""

    action: ActionKey
    error: TutorialError
    decision: RecoveryDecision
    step: TutorialStepId | None = None


@dataclass
class DetectionStatus:
    """Snapshot of the detector for observability and tests.

    Attributes:
        active_actions: Action keys with an armed cycle.
        retry_attempts: Re-arms already spent per armed action.
        retries_remaining: Re-arms left per armed action.
        has_timeouts: Whether any timeout timer is pending.
        global_listeners: Number of process-wide signal listeners installed.
        escalated_actions: Actions whose retries were exhausted.
    """

    active_actions: list[str] = field(default_factory=list)
    retry_attempts: dict[str, int] = field(default_factory=dict)
    retries_remaining: dict[str, int] = field(default_factory=dict)
    has_timeouts: bool = False
    global_listeners: int = 0
    escalated_actions: list[str] = field(default_factory=list)


class _ActionArm:
    """Per-action detection state: Idle -> Armed -> Satisfied | TimedOut."""

    def __init__(
        self, action: ActionKey, config: ActionDetectionConfig, step: TutorialStepId | None
    ) -> None:
        self.action = action
        self.config = config
        self.step = step
        self.state = DetectionState.IDLE
        self.cycle = 0
        self.retries_remaining = config.retries
        self.baseline = 0
        self.timeout_handle: TimerHandle | None = None
        self._handles: list[Unsubscribe] = []

    @property
    def timeout_ms(self) -> int:
        return self.config.timeout

    def own(self, cancel: Unsubscribe) -> None:
        self._handles.append(cancel)

    def release(self) -> None:
        handles, self._handles = self._handles, []
        for cancel in handles:
            try:
                cancel()
            except Exception:
                logger.exception("Failed to release detection handle for %s", self.action.value)
        self.timeout_handle = None

    @property
    def handle_count(self) -> int:
        return len(self._handles)


class ActionDetector:
    """Detects required user actions and reports them to the state machine.

    Args:
        manager: State machine that records completions.
        surface: User-interface signal collaborator.
        error_handler: Classifies exhausted detections.
        clock: Timer source for timeouts and polling.
        settings: Engine settings (polling interval).
        on_progress: Called with the user's progress after a detected action
            has been recorded and the tutorial resumed. May be a coroutine
            function.
        on_escalation: Called when retries are exhausted and the decision
            is to surface a recovery to the user, or to give up.
        action_signals: Process-wide signal names per action.
        tab_actions: Actions satisfied by selecting a dashboard tab index.
    """

    def __init__(
        self,
        manager: TutorialManager,
        surface: UISurface,
        error_handler: ErrorHandler | None = None,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        on_progress: Callable[[TutorialProgress | None], Awaitable[None] | None] | None = None,
        on_escalation: Callable[[Escalation], None] | None = None,
        action_signals: dict[ActionKey, str] | None = None,
        tab_actions: dict[int, ActionKey] | None = None,
    ) -> None:
        self._manager = manager
        self._surface = surface
        self._error_handler = error_handler or manager.error_handler
        self._clock = clock or AsyncioClock()
        self._settings = settings or manager.settings
        self.on_progress = on_progress
        self.on_escalation = on_escalation
        self._action_signals = (
            DEFAULT_ACTION_SIGNALS if action_signals is None else dict(action_signals)
        )
        self._tab_actions = DEFAULT_TAB_ACTIONS if tab_actions is None else dict(tab_actions)

        self._user_id: str | None = None
        self._arms: dict[ActionKey, _ActionArm] = {}
        self._configs: dict[ActionKey, tuple[ActionDetectionConfig, TutorialStepId | None]] = {}
        self._escalations: dict[ActionKey, Escalation] = {}
        self._global_handles: list[Unsubscribe] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def user_id(self) -> str | None:
        return self._user_id

    # -- lifecycle -----------------------------------------------------------

    def initialize(self, user_id: str) -> None:
        """Install process-wide listeners for ``user_id``.

        Any existing listeners are torn down first, so re-initializing never
        double-registers.
        """
        self.cleanup()
        self._user_id = user_id
        for action, signal in self._action_signals.items():
            handle = self._surface.add_signal_listener(
                signal, partial(self._on_global_signal, action)
            )
            self._global_handles.append(handle)
        logger.debug(
            "Action detection initialized for %s with %d global listeners",
            user_id,
            len(self._global_handles),
        )

    def cleanup(self) -> None:
        """Tear down every listener, observer and timer. Safe to call repeatedly."""
        for arm in list(self._arms.values()):
            arm.release()
            arm.state = DetectionState.IDLE
        self._arms.clear()
        self._configs.clear()
        self._escalations.clear()

        handles, self._global_handles = self._global_handles, []
        for unsubscribe in handles:
            try:
                unsubscribe()
            except Exception:
                logger.exception("Failed to remove global tutorial listener")

    def setup_action_detection(
        self,
        action: ActionKey | str,
        config: ActionDetectionConfig,
        step: TutorialStepId | str | None = None,
    ) -> None:
        """Arm every configured strategy for ``action``.

        Re-entrant per action key: an existing cycle for the same action is
        fully torn down before the new one is installed. An unset timeout or
        retry budget falls back to the user's tutorial config.

        Raises:
            ValueError: If ``action`` is not a known action key.
        """
        key = ActionKey(action)
        previous = self._arms.pop(key, None)
        if previous is not None:
            previous.release()
        self._escalations.pop(key, None)

        step_id = parse_step(step) if step is not None else None
        config = self._manager.definition_for(self._user_id).resolve_detection(config)
        self._configs[key] = (config, step_id)
        arm = _ActionArm(key, config, step_id)
        self._arms[key] = arm
        self._arm(arm)

    def disarm(self, action: ActionKey | str) -> bool:
        """Tear down the arm cycle of ``action`` without reporting anything."""
        arm = self._arms.pop(ActionKey(action), None)
        if arm is None:
            return False
        arm.release()
        arm.state = DetectionState.IDLE
        return True

    def retry_action(self, action: ActionKey | str) -> bool:
        """Re-arm an action with a fresh retry budget, e.g. after an escalation."""
        key = ActionKey(action)
        if key not in self._configs:
            return False
        config, step = self._configs[key]
        self.setup_action_detection(key, config, step)
        return True

    async def trigger_action_completed(self, action: ActionKey | str) -> None:
        """Force completion of ``action``, bypassing the strategies."""
        key = ActionKey(action)
        arm = self._arms.pop(key, None)
        if arm is not None:
            arm.release()
            arm.state = DetectionState.SATISFIED
        await self._complete(key, "manual")

    async def wait_idle(self) -> None:
        """Wait for in-flight completion and error-recording writes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- status --------------------------------------------------------------

    def get_detection_status(self) -> DetectionStatus:
        armed = {k: a for k, a in self._arms.items() if a.state is DetectionState.ARMED}
        return DetectionStatus(
            active_actions=[k.value for k in armed],
            retry_attempts={k.value: a.cycle - 1 for k, a in armed.items()},
            retries_remaining={k.value: a.retries_remaining for k, a in armed.items()},
            has_timeouts=any(
                a.timeout_handle is not None and not a.timeout_handle.cancelled()
                for a in armed.values()
            ),
            global_listeners=len(self._global_handles),
            escalated_actions=[k.value for k in self._escalations],
        )

    def get_escalation(self, action: ActionKey | str) -> Escalation | None:
        try:
            return self._escalations.get(ActionKey(action))
        except ValueError:
            return None

    def get_state(self, action: ActionKey | str) -> DetectionState:
        arm = self._arms.get(ActionKey(action))
        if arm is not None:
            return arm.state
        escalation = self._escalations.get(ActionKey(action))
        if escalation is not None:
            return (
                DetectionState.TIMED_OUT
                if escalation.decision.should_recover
                else DetectionState.ABANDONED
            )
        return DetectionState.IDLE

    # -- arming --------------------------------------------------------------

    def _arm(self, arm: _ActionArm) -> None:
        config = arm.config
        arm.cycle += 1
        arm.state = DetectionState.ARMED
        cycle = arm.cycle

        if config.selectors:
            for event_type in config.events:
                arm.own(
                    self._surface.add_event_listener(
                        event_type,
                        partial(self._on_interaction, arm, cycle, config.selectors, "primary"),
                    )
                )

        if config.fallback_selectors:
            for event_type in config.fallback_events:
                arm.own(
                    self._surface.add_event_listener(
                        event_type,
                        partial(
                            self._on_interaction, arm, cycle, config.fallback_selectors, "fallback"
                        ),
                    )
                )

        if config.custom_event_name:
            arm.own(
                self._surface.add_signal_listener(
                    config.custom_event_name,
                    partial(self._on_custom_signal, arm, cycle),
                )
            )

        if config.presence_selectors:
            arm.baseline = self._count_present(config)
            try:
                arm.own(
                    self._surface.observe(
                        config.watch_region, partial(self._check_presence, arm, cycle, "mutation")
                    )
                )
            except ValueError:
                logger.debug("Cannot observe region %r for %s", config.watch_region, arm.action.value)
            poller = self._clock.call_every(
                self._settings.poll_interval_seconds,
                partial(self._check_presence, arm, cycle, "polling"),
            )
            arm.own(poller.cancel)

        arm.timeout_handle = self._clock.call_later(
            arm.timeout_ms / 1000, partial(self._on_timeout, arm, cycle)
        )
        arm.own(arm.timeout_handle.cancel)
        logger.debug(
            "Armed detection for %s (cycle %d, %d handles, timeout %dms)",
            arm.action.value,
            cycle,
            arm.handle_count,
            arm.timeout_ms,
        )

    def _is_live(self, arm: _ActionArm, cycle: int) -> bool:
        return (
            self._arms.get(arm.action) is arm
            and arm.state is DetectionState.ARMED
            and arm.cycle == cycle
        )

    # -- strategies ----------------------------------------------------------

    def _on_interaction(
        self,
        arm: _ActionArm,
        cycle: int,
        selectors: list[str],
        strategy: str,
        event: UIEvent,
    ) -> None:
        if not self._is_live(arm, cycle) or event.target is None:
            return
        if self._match_any(event.target, selectors) is not None:
            self._fire(arm, strategy)

    def _on_custom_signal(self, arm: _ActionArm, cycle: int, detail: dict[str, Any]) -> None:
        if self._is_live(arm, cycle):
            self._fire(arm, "custom_event")

    def _check_presence(self, arm: _ActionArm, cycle: int, strategy: str) -> None:
        if not self._is_live(arm, cycle):
            return
        if self._count_present(arm.config) > arm.baseline:
            self._fire(arm, strategy)

    def _on_global_signal(self, action: ActionKey, detail: dict[str, Any]) -> None:
        self._on_detected(action, "signal")
        if action is ActionKey.TAB_CLICK:
            tab_action = self._tab_actions.get((detail or {}).get("tabIndex"))
            if tab_action is not None:
                self._on_detected(tab_action, "signal")

    def _on_detected(self, action: ActionKey, strategy: str) -> None:
        arm = self._arms.get(action)
        if arm is None or arm.state is not DetectionState.ARMED:
            logger.debug("Ignoring %s signal for %s; action is not armed", strategy, action.value)
            return
        self._fire(arm, strategy)

    def _match_any(self, target: Any, selectors: list[str]) -> str | None:
        for selector in selectors:
            try:
                if self._surface.matches(target, selector):
                    return selector
                if self._surface.closest(target, selector) is not None:
                    return selector
            except ValueError:
                logger.debug("Ignoring invalid selector %r", selector)
        return None

    def _count_present(self, config: ActionDetectionConfig) -> int:
        total = 0
        for selector in config.presence_selectors:
            try:
                total += len(self._surface.query_all(selector, config.watch_region))
            except ValueError:
                logger.debug("Ignoring invalid presence selector %r", selector)
        return total

    # -- outcomes ------------------------------------------------------------

    def _fire(self, arm: _ActionArm, strategy: str) -> None:
        arm.state = DetectionState.SATISFIED
        arm.release()
        self._arms.pop(arm.action, None)
        logger.info("Detected tutorial action %s via %s", arm.action.value, strategy)
        self._spawn(self._complete(arm.action, strategy))

    def _on_timeout(self, arm: _ActionArm, cycle: int) -> None:
        if not self._is_live(arm, cycle):
            return
        arm.release()
        if arm.retries_remaining > 0:
            arm.retries_remaining -= 1
            logger.info(
                "Detection for %s timed out after %dms; re-arming (%d retries left)",
                arm.action.value,
                arm.timeout_ms,
                arm.retries_remaining,
            )
            self._arm(arm)
            return
        self._escalate(arm)

    def _escalate(self, arm: _ActionArm) -> None:
        error = self._error_handler.create_error(
            ErrorCode.ACTION_TIMEOUT,
            f"Action {arm.action.value} timed out after {arm.cycle} attempt(s)",
            step=arm.step,
            action=arm.action,
            metadata={"timeout_ms": arm.timeout_ms, "attempts": arm.cycle},
        )
        decision = self._error_handler.handle_error(error, retries_remaining=arm.retries_remaining)
        escalation = Escalation(action=arm.action, error=error, decision=decision, step=arm.step)
        self._escalations[arm.action] = escalation

        if self._user_id is not None:
            self._spawn(self._manager.record_error(self._user_id, error))

        if decision.should_retry:
            arm.retries_remaining = arm.config.retries
            self._arm(arm)
            return

        arm.state = (
            DetectionState.TIMED_OUT if decision.should_recover else DetectionState.ABANDONED
        )
        self._arms.pop(arm.action, None)
        logger.warning("Giving up on detecting %s: %s", arm.action.value, decision.user_message)
        if self.on_escalation is not None:
            self.on_escalation(escalation)

    async def _complete(self, action: ActionKey, strategy: str) -> None:
        user_id = self._user_id
        if user_id is None:
            logger.warning("Tutorial action %s detected before initialize()", action.value)
            return

        try:
            marked = await self._manager.mark_action_completed(user_id, action)
            if not marked:
                self._error_handler.create_error(
                    ErrorCode.PERSISTENCE_FAILURE,
                    f"Could not record tutorial action {action.value}",
                    action=action,
                    metadata={"strategy": strategy},
                )
                return
            progress = await self._manager.resume_tutorial(user_id)
        except Exception as e:
            logger.exception("Error completing tutorial action %s", action.value)
            self._error_handler.create_error(
                ErrorCode.PERSISTENCE_FAILURE,
                f"Error completing tutorial action {action.value}: {e}",
                action=action,
                metadata={"strategy": strategy},
            )
            return

        if self.on_progress is not None:
            result = self.on_progress(progress)
            if inspect.isawaitable(result):
                await result

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop; dropping tutorial completion work")
            return
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Tutorial detection task failed", exc_info=task.exception())
