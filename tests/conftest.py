"""Shared fixtures for tutorflow tests."""

from pathlib import Path
from typing import Any

import pytest

from tutorflow.clock import ManualClock
from tutorflow.definition import TutorialDefinition
from tutorflow.detection import ActionDetector
from tutorflow.errors import ErrorHandler
from tutorflow.manager import TutorialManager
from tutorflow.ports import ProgressStoreError
from tutorflow.settings import EngineSettings
from tutorflow.store import InMemoryProgressStore
from tutorflow.surface import HtmlSurface
from tutorflow.templates import TutorialConfigManager

PAGE = """
<html><body>
  <nav class="tab-navigation" role="tablist">
    <button class="tab" role="tab" id="tab-home">Home</button>
    <button class="tab" role="tab" id="tab-tasks">Tasks</button>
  </nav>
  <main id="content">
    <form class="task-creation-form" id="task-form">
      <input data-testid="task-input" class="task-input" id="task-input">
    </form>
    <ul class="task-list"></ul>
    <section class="ai-suggestions"><button id="ai-open"><span id="ai-label">Open</span></button></section>
    <section class="student-connections" id="connections"></section>
    <p id="plain">Nothing here</p>
  </main>
  <aside id="sidebar"></aside>
</body></html>
"""


class FlakyStore(InMemoryProgressStore):
    """In-memory store with switchable failures and call counters."""

    def __init__(self) -> None:
        super().__init__()
        self.read_failures = 0
        self.fail_inserts = False
        self.fail_updates = False
        self.fail_events = False
        self.reads = 0
        self.updates = 0

    async def get(self, user_id: str) -> dict[str, Any] | None:
        self.reads += 1
        if self.read_failures > 0:
            self.read_failures -= 1
            raise ProgressStoreError("read failed")
        return await super().get(user_id)

    async def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        if self.fail_inserts:
            raise ProgressStoreError("insert failed")
        return await super().insert(record)

    async def update(self, user_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        self.updates += 1
        if self.fail_updates:
            raise ProgressStoreError("write failed")
        return await super().update(user_id, fields)

    async def append_event(self, event: dict[str, Any]) -> None:
        if self.fail_events:
            raise ProgressStoreError("event failed")
        await super().append_event(event)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    return EngineSettings(
        progress_dir=tmp_path / "progress",
        retry_delay_seconds=0,
        poll_interval_seconds=2.0,
    )


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def config_manager() -> TutorialConfigManager:
    return TutorialConfigManager()


@pytest.fixture
def definition(config_manager: TutorialConfigManager) -> TutorialDefinition:
    return config_manager.build_definition("standard")


@pytest.fixture
def error_handler() -> ErrorHandler:
    return ErrorHandler()


@pytest.fixture
def manager(
    store: FlakyStore,
    definition: TutorialDefinition,
    error_handler: ErrorHandler,
    clock: ManualClock,
    settings: EngineSettings,
) -> TutorialManager:
    return TutorialManager(
        store, definition, error_handler=error_handler, clock=clock, settings=settings
    )


@pytest.fixture
def surface() -> HtmlSurface:
    return HtmlSurface(PAGE)


@pytest.fixture
def detector(
    manager: TutorialManager,
    surface: HtmlSurface,
    error_handler: ErrorHandler,
    clock: ManualClock,
    settings: EngineSettings,
) -> ActionDetector:
    return ActionDetector(
        manager, surface, error_handler=error_handler, clock=clock, settings=settings
    )
