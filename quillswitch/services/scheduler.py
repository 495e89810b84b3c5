"""Cron scheduling of recurring migrations on APScheduler."""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

ProjectRunner = Callable[[str], Awaitable[Any]]


def validate_cron(cron_expression: str) -> CronTrigger:
    """
    Parse a five-field crontab expression.

    Raises:
        ValueError: If the expression is malformed
    """
    return CronTrigger.from_crontab(cron_expression, timezone=timezone.utc)


class MigrationScheduler:
    """
    Fires scheduled migration projects on their cron expressions.

    Each project gets one APScheduler job whose id is the project id. The
    job calls ``runner(project_id)``; deciding whether that starts the
    project or a fresh incremental run is the orchestrator's job.
    """

    def __init__(self, runner: ProjectRunner, scheduler: Optional[AsyncIOScheduler] = None):
        """
        Initialize the scheduler.

        Args:
            runner: Coroutine function called with the project id on each fire
            scheduler: Custom APScheduler instance
        """
        self.runner = runner
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._crons: Dict[str, str] = {}

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the APScheduler instance (needs a running event loop)."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Migration scheduler started")

    def shutdown(self) -> None:
        """Stop the scheduler and drop pending fires."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Migration scheduler stopped")

    def schedule(self, project_id: str, cron_expression: str) -> Optional[datetime]:
        """
        Register (or replace) the recurring job of a project.

        Args:
            project_id: Project to fire
            cron_expression: Standard cron string, e.g. "0 2 * * *"

        Returns:
            The next fire time

        Raises:
            ValueError: If the cron expression is malformed
        """
        trigger = validate_cron(cron_expression)
        self.scheduler.add_job(
            self._fire,
            trigger=trigger,
            id=project_id,
            args=[project_id],
            name=f"Migration project {project_id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._crons[project_id] = cron_expression
        next_run = trigger.get_next_fire_time(None, datetime.now(timezone.utc))
        logger.info(f"Scheduled project {project_id} with '{cron_expression}', next run {next_run}")
        return next_run

    async def _fire(self, project_id: str) -> None:
        logger.info(f"Scheduled run of project {project_id} firing")
        try:
            await self.runner(project_id)
        except Exception as e:
            logger.error(f"Scheduled run of project {project_id} failed to start: {e}", exc_info=True)

    def next_run(self, project_id: str) -> Optional[datetime]:
        """Next fire time of a project's job, None when it has none."""
        cron = self._crons.get(project_id)
        if cron is None:
            return None
        job = self.scheduler.get_job(project_id)
        if job is not None and getattr(job, "next_run_time", None):
            return job.next_run_time
        return validate_cron(cron).get_next_fire_time(None, datetime.now(timezone.utc))

    def remove(self, project_id: str) -> bool:
        """Drop a project's job. Returns False when it had none."""
        if self._crons.pop(project_id, None) is None:
            return False
        if self.scheduler.get_job(project_id) is not None:
            self.scheduler.remove_job(project_id)
        logger.info(f"Removed schedule of project {project_id}")
        return True

    def list_schedules(self) -> Dict[str, Dict[str, Any]]:
        return {
            project_id: {"cron": cron, "next_run": self.next_run(project_id)}
            for project_id, cron in self._crons.items()
        }
