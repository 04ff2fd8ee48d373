"""Tutorial state machine.

Owns step sequencing and persisted progress. Every mutating operation is a
read-modify-write of the user's single progress row, serialized per user,
and guarded so that stale transitions are rejected instead of relying on
the store for conflict detection. Write failures are returned as
:class:`~tutorflow.models.TutorialResult` values and never raised.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from .clock import AsyncioClock, Clock
from .definition import TutorialDefinition
from .errors import ErrorCode, ErrorHandler, TutorialError
from .models import (
    DEFAULT_REWARDS,
    ActionKey,
    StepActionStatus,
    StepDefinition,
    TutorialProgress,
    TutorialResult,
    TutorialReward,
    TutorialStepId,
    parse_step,
)
from .ports import ProgressStore, ProgressStoreError
from .settings import EngineSettings

logger = logging.getLogger(__name__)

_RESERVED_STEP_DATA = frozenset({"completedActions", "lastActionCompleted", "lastActionTime"})


class TutorialManager:
    """Persisted onboarding state machine.

    Args:
        store: Persistence collaborator.
        definition: Catalog used for users without a definition of their own.
        error_handler: Builds error records for failed operations.
        clock: Time source for timestamps and retry delays.
        settings: Engine settings (read retries, retry delay).
        rewards: Reward catalog exposed to downstream consumers.
    """

    def __init__(
        self,
        store: ProgressStore,
        definition: TutorialDefinition,
        error_handler: ErrorHandler | None = None,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        rewards: tuple[TutorialReward, ...] = DEFAULT_REWARDS,
    ) -> None:
        self._store = store
        self._default_definition = definition
        self._definitions: dict[str, TutorialDefinition] = {}
        self.error_handler = error_handler or ErrorHandler()
        self._clock = clock or AsyncioClock()
        self.settings = settings or EngineSettings()
        self._rewards = rewards
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # -- definitions ---------------------------------------------------------

    def set_definition(self, user_id: str, definition: TutorialDefinition) -> None:
        """Use ``definition`` as the catalog for ``user_id``."""
        self._definitions[user_id] = definition

    def definition_for(self, user_id: str | None = None) -> TutorialDefinition:
        if user_id is None:
            return self._default_definition
        return self._definitions.get(user_id, self._default_definition)

    def release_user(self, user_id: str) -> None:
        """Forget the per-user catalog once the user's session ends."""
        self._definitions.pop(user_id, None)

    def get_step_config(
        self, step: TutorialStepId | str, user_id: str | None = None
    ) -> StepDefinition | None:
        """Look up a step definition. Unknown keys return None."""
        return self.definition_for(user_id).get_step(step)

    def get_all_steps(self, user_id: str | None = None) -> list[StepDefinition]:
        return list(self.definition_for(user_id).steps)

    def get_tutorial_rewards(self, step: TutorialStepId | str) -> list[TutorialReward]:
        """Active rewards granted for passing ``step``."""
        key = parse_step(step)
        return [r for r in self._rewards if r.step is key and r.is_active]

    # -- reads ---------------------------------------------------------------

    async def get_progress(self, user_id: str, retries: int | None = None) -> TutorialProgress | None:
        """Read a user's progress.

        Transient read failures are retried up to ``retries`` attempts and
        then reported as "no progress", which callers treat as not started.

        Args:
            user_id: User to read.
            retries: Maximum read attempts. Defaults to ``settings.read_retries``.

        Returns:
            The user's TutorialProgress, or None.
        """
        try:
            return await self._load(user_id, retries)
        except ProgressStoreError:
            return None

    async def should_show_tutorial(self, user_id: str) -> bool:
        """Whether to show the tutorial. Fails open on read errors."""
        try:
            progress = await self.get_progress(user_id)
        except Exception:
            logger.exception("Could not read tutorial progress for %s; showing tutorial", user_id)
            return True
        return progress is None or not progress.is_terminal

    async def is_action_completed(self, user_id: str, action: ActionKey | str) -> bool:
        progress = await self.get_progress(user_id)
        if progress is None:
            return False
        try:
            return ActionKey(action) in progress.completed_actions
        except ValueError:
            return False

    async def check_step_action_completion(self, user_id: str) -> StepActionStatus:
        """Report whether the active step needs an action and whether it is done."""
        progress = await self.get_progress(user_id)
        if progress is None:
            return StepActionStatus(needs_action=False, action_completed=False)

        step = self.definition_for(user_id).get_step(progress.current_step)
        if step is None or step.required_action is None:
            return StepActionStatus(needs_action=False, action_completed=True)

        return StepActionStatus(
            needs_action=True,
            action_completed=step.required_action in progress.completed_actions,
            action=step.required_action,
        )

    # -- transitions ---------------------------------------------------------

    async def initialize_tutorial(self, user_id: str) -> TutorialResult[TutorialProgress]:
        """Create progress at the first step, or return the existing record."""
        async with self._user_lock(user_id):
            try:
                existing = await self._load(user_id)
            except ProgressStoreError as e:
                return self._failure(
                    ErrorCode.INITIALIZATION_FAILED, f"Could not read progress: {e}"
                )
            if existing is not None:
                return TutorialResult(success=True, data=existing)

            progress = self._fresh_progress(user_id)
            try:
                row = await self._store.insert(progress.to_dict())
            except Exception as e:
                logger.exception("Error initializing tutorial for %s", user_id)
                return self._failure(
                    ErrorCode.INITIALIZATION_FAILED, f"Could not create progress: {e}"
                )

        logger.info("Initialized tutorial for %s at step %s", user_id, progress.current_step.value)
        await self._log_action(user_id, progress.current_step, "started")
        return TutorialResult(success=True, data=TutorialProgress.from_dict(row))

    async def advance_to_next_step(
        self, user_id: str, from_step: TutorialStepId | str
    ) -> TutorialResult[TutorialProgress]:
        """Complete ``from_step`` and move to its successor.

        Fails with ``INVALID_STATE`` when ``from_step`` is unknown to the
        user's catalog or is not the user's current step, so a repeated call
        for a step that was already passed is rejected.
        """
        definition = self.definition_for(user_id)
        step = parse_step(from_step)
        if step is None or not definition.contains(step):
            return self._failure(
                ErrorCode.INVALID_STATE, f"Unknown tutorial step: {from_step}", step=from_step
            )

        async with self._user_lock(user_id):
            try:
                progress = await self._load(user_id)
            except ProgressStoreError as e:
                return self._failure(ErrorCode.PERSISTENCE_FAILURE, str(e), step=step)

            if progress is None:
                return self._failure(
                    ErrorCode.INVALID_STATE, f"No tutorial progress for {user_id}", step=step
                )
            if progress.is_terminal:
                return self._failure(
                    ErrorCode.INVALID_STATE, "Tutorial already finished", step=step
                )
            if progress.current_step is not step:
                return self._failure(
                    ErrorCode.INVALID_STATE,
                    f"Stale transition from {step.value}; current step is "
                    f"{progress.current_step.value}",
                    step=step,
                )

            next_step = definition.successor(step)
            completed_steps = [s.value for s in progress.completed_steps]
            if step.value not in completed_steps:
                completed_steps.append(step.value)
            fields: dict[str, Any] = {
                "current_step": next_step.value,
                "completed_steps": completed_steps,
                "is_completed": next_step is TutorialStepId.COMPLETION,
            }
            if next_step is TutorialStepId.COMPLETION:
                fields["completed_at"] = self._now()

            try:
                row = await self._update(user_id, fields)
            except Exception as e:
                logger.exception("Error advancing tutorial step for %s", user_id)
                return self._failure(ErrorCode.PERSISTENCE_FAILURE, str(e), step=step)

        logger.info("User %s advanced from %s to %s", user_id, step.value, next_step.value)
        await self._log_action(user_id, step, "completed")
        return TutorialResult(success=True, data=TutorialProgress.from_dict(row))

    async def skip_step(
        self, user_id: str, step: TutorialStepId | str
    ) -> TutorialResult[TutorialProgress]:
        """Leave ``step`` through the skip path; otherwise identical to advancing."""
        definition = self.get_step_config(step, user_id)
        if definition is not None and not definition.skip_allowed:
            return self._failure(
                ErrorCode.INVALID_STATE, f"Step {definition.id.value} cannot be skipped", step=step
            )
        result = await self.advance_to_next_step(user_id, step)
        if result.success:
            await self._log_action(user_id, parse_step(step), "skipped")
        return result

    async def skip_tutorial(self, user_id: str) -> TutorialResult[TutorialProgress]:
        """Mark the whole tutorial as skipped and completed."""
        now = self._now()
        fields = {"is_skipped": True, "is_completed": True, "completed_at": now}
        async with self._user_lock(user_id):
            try:
                progress = await self._load(user_id)
                if progress is None:
                    fresh = self._fresh_progress(user_id)
                    row = await self._store.insert({**fresh.to_dict(), **fields})
                else:
                    row = await self._update(user_id, fields)
            except Exception as e:
                logger.exception("Error skipping tutorial for %s", user_id)
                return self._failure(ErrorCode.PERSISTENCE_FAILURE, str(e))

        await self._log_action(user_id, TutorialStepId.COMPLETION, "skipped")
        return TutorialResult(success=True, data=TutorialProgress.from_dict(row))

    async def restart_tutorial(self, user_id: str) -> TutorialResult[TutorialProgress]:
        """Reset the active progress snapshot to the first step."""
        definition = self.definition_for(user_id)
        now = self._now()
        async with self._user_lock(user_id):
            try:
                progress = await self._load(user_id)
                if progress is None:
                    row = await self._store.insert(self._fresh_progress(user_id).to_dict())
                else:
                    row = await self._update(
                        user_id,
                        {
                            "current_step": definition.first_step.value,
                            "completed_steps": [],
                            "is_completed": False,
                            "is_skipped": False,
                            "step_data": {},
                            "error_count": 0,
                            "last_error": None,
                            "started_at": now,
                            "completed_at": None,
                        },
                    )
            except Exception as e:
                logger.exception("Error restarting tutorial for %s", user_id)
                return self._failure(ErrorCode.PERSISTENCE_FAILURE, str(e))

        await self._log_action(user_id, definition.first_step, "replay")
        return TutorialResult(success=True, data=TutorialProgress.from_dict(row))

    async def align_to_definition(self, user_id: str) -> TutorialResult[TutorialProgress]:
        """Move the user onto their catalog when the stored step is not part of it.

        Progress recorded under another template can point at a step the
        current catalog lacks. Such a user moves to the first catalog step
        not yet completed, or to ``COMPLETION`` when every step is done.
        Progress that already fits is returned unchanged.
        """
        definition = self.definition_for(user_id)
        async with self._user_lock(user_id):
            try:
                progress = await self._load(user_id)
            except ProgressStoreError as e:
                return self._failure(ErrorCode.PERSISTENCE_FAILURE, str(e))

            if progress is None:
                return self._failure(ErrorCode.INVALID_STATE, f"No tutorial progress for {user_id}")
            if progress.is_terminal or definition.contains(progress.current_step):
                return TutorialResult(success=True, data=progress)

            remaining = [s for s in definition.sequence if s not in progress.completed_steps]
            target = remaining[0] if remaining else TutorialStepId.COMPLETION
            fields: dict[str, Any] = {"current_step": target.value}
            if target is TutorialStepId.COMPLETION:
                fields["is_completed"] = True
                fields["completed_at"] = self._now()

            try:
                row = await self._update(user_id, fields)
            except Exception as e:
                logger.exception("Error aligning tutorial progress for %s", user_id)
                return self._failure(ErrorCode.PERSISTENCE_FAILURE, str(e))

        logger.info(
            "Moved %s from %s to %s in tutorial %s",
            user_id,
            progress.current_step.value,
            target.value,
            definition.template_id,
        )
        return TutorialResult(success=True, data=TutorialProgress.from_dict(row))

    async def resume_tutorial(self, user_id: str) -> TutorialProgress | None:
        """Advance past every leading step whose required action is satisfied.

        Returns:
            The user's progress after any advances, or None without progress.
        """
        definition = self.definition_for(user_id)
        progress = await self.get_progress(user_id)
        for _ in range(len(definition.sequence)):
            if progress is None or progress.is_terminal:
                return progress
            step = definition.get_step(progress.current_step)
            if step is None or step.required_action is None:
                return progress
            if step.required_action not in progress.completed_actions:
                return progress

            result = await self.advance_to_next_step(user_id, step.id)
            if not result.success:
                return await self.get_progress(user_id)
            progress = result.data
        return progress

    # -- step data -----------------------------------------------------------

    async def mark_action_completed(self, user_id: str, action: ActionKey | str) -> bool:
        """Record that ``action`` was performed.

        Idempotent: an action that is already recorded returns True without
        writing.
        """
        try:
            key = ActionKey(action)
        except ValueError:
            logger.warning("Ignoring unknown tutorial action %r", action)
            return False

        async with self._user_lock(user_id):
            try:
                progress = await self._load(user_id)
            except ProgressStoreError:
                logger.warning("Could not read progress to mark %s for %s", key.value, user_id)
                return False
            if progress is None:
                logger.warning("No tutorial progress for %s; cannot mark %s", user_id, key.value)
                return False
            if key in progress.completed_actions:
                return True

            progress.completed_actions.append(key)
            progress.last_action_completed = key
            progress.last_action_time = self._now()
            try:
                await self._update(user_id, {"step_data": progress.step_data()})
            except Exception:
                logger.exception("Error marking action %s for %s", key.value, user_id)
                return False

        logger.info("Tutorial action completed for %s: %s", user_id, key.value)
        return True

    async def update_step_data(
        self, user_id: str, data: dict[str, Any]
    ) -> TutorialResult[TutorialProgress]:
        """Merge caller-owned keys into the user's step data."""
        reserved = _RESERVED_STEP_DATA.intersection(data)
        if reserved:
            return self._failure(
                ErrorCode.INVALID_STATE, f"Reserved step data keys: {sorted(reserved)}"
            )

        async with self._user_lock(user_id):
            try:
                progress = await self._load(user_id)
                if progress is None:
                    return self._failure(
                        ErrorCode.INVALID_STATE, f"No tutorial progress for {user_id}"
                    )
                progress.extra.update(data)
                row = await self._update(user_id, {"step_data": progress.step_data()})
            except Exception as e:
                logger.exception("Error updating step data for %s", user_id)
                return self._failure(ErrorCode.PERSISTENCE_FAILURE, str(e))

        return TutorialResult(success=True, data=TutorialProgress.from_dict(row))

    async def record_error(self, user_id: str, error: TutorialError) -> bool:
        """Count a failure against the user's progress telemetry."""
        async with self._user_lock(user_id):
            try:
                progress = await self._load(user_id)
                if progress is None:
                    return False
                await self._update(
                    user_id,
                    {"error_count": progress.error_count + 1, "last_error": error.message},
                )
            except Exception:
                logger.exception("Error recording tutorial failure for %s", user_id)
                return False

        action = "timeout" if error.code is ErrorCode.ACTION_TIMEOUT else "error"
        await self._log_action(
            user_id, progress.current_step, action, {"code": error.code.value, "action": error.action}
        )
        return True

    # -- internals -----------------------------------------------------------

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialize operations for one user; the lock is dropped once idle."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    def _now(self) -> str:
        return self._clock.now().isoformat()

    def _fresh_progress(self, user_id: str) -> TutorialProgress:
        now = self._now()
        return TutorialProgress(
            user_id=user_id,
            current_step=self.definition_for(user_id).first_step,
            started_at=now,
            last_seen_at=now,
            created_at=now,
            updated_at=now,
        )

    async def _load(self, user_id: str, retries: int | None = None) -> TutorialProgress | None:
        attempts = max(retries if retries is not None else self.settings.read_retries, 1)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                row = await self._store.get(user_id)
            except Exception as e:
                last_error = e
                logger.warning(
                    "Failed to read tutorial progress for %s (attempt %d/%d): %s",
                    user_id,
                    attempt,
                    attempts,
                    e,
                )
                if attempt < attempts and self.settings.retry_delay_seconds > 0:
                    await self._clock.sleep(self.settings.retry_delay_seconds)
                continue

            if row is None:
                return None
            try:
                return TutorialProgress.from_dict(row)
            except (KeyError, TypeError, ValueError) as e:
                raise ProgressStoreError(f"Corrupt progress row for {user_id}: {e}") from e

        raise ProgressStoreError(
            f"Could not read progress for {user_id} after {attempts} attempts"
        ) from last_error

    async def _update(self, user_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        now = self._now()
        return await self._store.update(user_id, {**fields, "last_seen_at": now, "updated_at": now})

    def _failure(
        self, code: ErrorCode, message: str, step: Any = None, action: Any = None
    ) -> TutorialResult:
        error = self.error_handler.create_error(code, message, step=step, action=action)
        return TutorialResult(success=False, error=error)

    async def _log_action(
        self,
        user_id: str,
        step: TutorialStepId | None,
        action: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self.definition_for(user_id).config.enable_analytics:
            return
        event = {
            "user_id": user_id,
            "step": step.value if step is not None else None,
            "action": action,
            "metadata": metadata or {},
            "created_at": self._now(),
        }
        try:
            await self._store.append_event(event)
        except Exception:
            logger.warning("Failed to record tutorial analytics event %s", action, exc_info=True)
