"""Schedule checking logic for cron-based backup scheduling."""

import logging
from datetime import datetime
from typing import List, Optional

from croniter import croniter

from .config import TargetConfig

logger = logging.getLogger(__name__)


class ScheduleChecker:
    """Handles evaluation of cron-based target schedules."""

    @staticmethod
    def should_run_backup(
        target: TargetConfig, current_time: Optional[datetime] = None
    ) -> bool:
        """
        Check if a backup to a target should run based on its cron schedule.

        Args:
            target: The target configuration
            current_time: Current time (defaults to now)

        Returns:
            True if the schedule matched between midnight and now, False otherwise
        """
        if current_time is None:
            current_time = datetime.now()

        schedule = target.schedule.strip()

        try:
            cron = croniter(schedule, current_time)
            prev_occurrence = cron.get_prev(datetime)

            today_start = current_time.replace(
                hour=0, minute=0, second=0, microsecond=0
            )

            return prev_occurrence >= today_start

        except Exception as e:
            raise ValueError(
                f"Error evaluating schedule '{schedule}' for target '{target.name}': {e}"
            )

    @staticmethod
    def get_scheduled_targets(
        targets: List[TargetConfig], current_time: Optional[datetime] = None
    ) -> List[TargetConfig]:
        """
        Filter targets to the enabled ones scheduled to run.

        Args:
            targets: List of all targets
            current_time: Current time (defaults to now)

        Returns:
            List of targets that should be backed up today
        """
        scheduled_targets = []

        for target in targets:
            if not target.enabled:
                continue
            try:
                if ScheduleChecker.should_run_backup(target, current_time):
                    scheduled_targets.append(target)
            except ValueError as e:
                # Don't stop processing other targets
                logger.warning(f"Could not evaluate schedule for target '{target.name}': {e}")
                continue

        return scheduled_targets

    @staticmethod
    def next_run_time(
        target: TargetConfig, current_time: Optional[datetime] = None
    ) -> datetime:
        """Get the next time a backup to this target is scheduled to run."""
        if current_time is None:
            current_time = datetime.now()

        schedule = target.schedule.strip()

        try:
            cron = croniter(schedule, current_time)
            return cron.get_next(datetime)
        except Exception as e:
            raise ValueError(
                f"Error calculating next run time for target '{target.name}': {e}"
            )
