"""
Background tasks for grade synchronization runs.

Runs each course's update as an asyncio task, refuses a second task for a
course that already has one, and resumes interrupted runs at startup.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from gradesync.core.config import EngineConfig
from gradesync.integrations.canvas.client import CanvasClient
from gradesync.integrations.canvas.error_handler import (
    AuthenticationError, RunInProgressError, get_user_friendly_message
)
from gradesync.schemas.grade_sync import RunOutcome, RunReport
from gradesync.services.grade_sync.orchestrator import UpdateOrchestrator, owner_is_stale
from gradesync.services.grade_sync.run_store import RunStore, scope_key_for_course
from gradesync.services.grade_sync.status import LoggingStatusReporter, StatusReporter

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Optional[str]], CanvasClient]
ReporterFactory = Callable[[str], StatusReporter]


def course_id_for_scope(scope_key: str) -> str:
    prefix, _, course_id = scope_key.partition(":")
    if prefix != "course" or not course_id:
        raise ValueError(f"Not a course scope: {scope_key}")
    return course_id


class GradeSyncTaskManager:
    """
    Manages background grade sync runs.
    """

    def __init__(
        self,
        store: RunStore,
        config: EngineConfig,
        client_factory: ClientFactory,
        reporter_factory: Optional[ReporterFactory] = None,
        resume_on_startup: bool = True
    ):
        self.store = store
        self.config = config
        self.client_factory = client_factory
        self.reporter_factory = reporter_factory or (lambda course_id: LoggingStatusReporter(scope_key_for_course(course_id)))
        self.resume_on_startup = resume_on_startup
        self._running_tasks: Dict[str, asyncio.Task] = {}
        self._orchestrators: Dict[str, UpdateOrchestrator] = {}
        self._reports: Dict[str, RunReport] = {}

    async def start(self) -> List[str]:
        """Start the task manager and resume interrupted runs."""
        logger.info("Starting grade sync task manager")
        resumed: List[str] = []

        if not self.resume_on_startup:
            return resumed

        for scope_key in await self.store.pending_scopes():
            try:
                course_id = course_id_for_scope(scope_key)
                await self.start_run(course_id)
                resumed.append(course_id)
            except (RunInProgressError, AuthenticationError, ValueError) as e:
                logger.warning(f"Could not resume {scope_key}: {e}")

        if resumed:
            logger.info(f"Resuming grade sync for courses: {resumed}")
        return resumed

    async def stop(self) -> None:
        """Stop the task manager and all running tasks."""
        logger.info("Stopping grade sync task manager")

        # Stored state is kept so the runs resume on the next start
        for scope_key, task in list(self._running_tasks.items()):
            if not task.done():
                logger.info(f"Cancelling task: {scope_key}")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._running_tasks.clear()
        self._orchestrators.clear()
        logger.info("Grade sync task manager stopped")

    def is_running(self, course_id: str) -> bool:
        task = self._running_tasks.get(scope_key_for_course(course_id))
        return task is not None and not task.done()

    def get_report(self, course_id: str) -> Optional[RunReport]:
        return self._reports.get(scope_key_for_course(course_id))

    async def start_run(self, course_id: str, token: Optional[str] = None) -> bool:
        """
        Start (or resume) the update for a course in the background.

        Returns:
            True when the stored state will be resumed rather than started fresh

        Raises:
            RunInProgressError: the course already has a run in this process
                or a live lease elsewhere
            AuthenticationError: no Canvas token is available
        """
        course_id = str(course_id)
        scope_key = scope_key_for_course(course_id)

        if self.is_running(course_id):
            raise RunInProgressError(f"A grade update is already running for {scope_key}", scope_key=scope_key)

        owner = await self.store.lease_owner(scope_key)
        if owner is not None and owner_is_stale(owner):
            logger.warning(f"Releasing lease on {scope_key} held by exited process {owner}")
            await self.store.release_lease(scope_key, owner)
        elif owner is not None:
            raise RunInProgressError(
                f"A grade update is already running for {scope_key}", owner=owner, scope_key=scope_key
            )

        client = self.client_factory(token)
        state = await self.store.get(scope_key)
        resuming = state is not None and state.is_resumable

        orchestrator = UpdateOrchestrator(
            self.store,
            client,
            course_id,
            config=self.config,
            reporter=self.reporter_factory(course_id)
        )
        self._orchestrators[scope_key] = orchestrator

        task = asyncio.create_task(self._run(scope_key, client, orchestrator))
        self._running_tasks[scope_key] = task
        task.add_done_callback(lambda finished: self._forget(scope_key, finished))

        logger.info(f"{'Resumed' if resuming else 'Started'} grade sync for {scope_key}")
        return resuming

    def _forget(self, scope_key: str, task: asyncio.Task) -> None:
        if self._running_tasks.get(scope_key) is task:
            del self._running_tasks[scope_key]
            self._orchestrators.pop(scope_key, None)

    async def _run(self, scope_key: str, client: CanvasClient, orchestrator: UpdateOrchestrator) -> Optional[RunReport]:
        try:
            async with client:
                report = await orchestrator.run()
        except RunInProgressError as e:
            logger.warning(f"Grade sync for {scope_key} not started: {e.message}")
            return None
        except asyncio.CancelledError:
            logger.info(f"Grade sync task for {scope_key} cancelled")
            raise
        except Exception as e:
            logger.error(f"Grade sync task for {scope_key} crashed: {e}")
            report = RunReport(
                scope_key=scope_key,
                outcome=RunOutcome.FAILED,
                message=get_user_friendly_message(e)
            )

        self._reports[scope_key] = report
        return report

    async def wait(self, course_id: str) -> Optional[RunReport]:
        """Wait for the course's current task, if any, and return its report."""
        scope_key = scope_key_for_course(course_id)
        task = self._running_tasks.get(scope_key)
        if task is not None:
            return await task
        return self._reports.get(scope_key)

    async def cancel(self, course_id: str) -> bool:
        """
        Cancel the course's run.

        Clears the stored state (which also frees the lease) so a fresh run
        can start; an in-process orchestrator stops at its next check.
        """
        scope_key = scope_key_for_course(course_id)
        orchestrator = self._orchestrators.get(scope_key)
        if orchestrator is not None:
            orchestrator.cancel()

        existed = await self.store.clear(scope_key)
        return existed or orchestrator is not None
