"""
Report pipeline and step status to database.
"""

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from controller.src.config import get_settings
from controller.src.models.db import PipelineRun, PipelineStep
from controller.src.models.step import StepResult

logger = logging.getLogger(__name__)

@lru_cache()
def get_session_factory() -> sessionmaker:
    # Sync database connection for controller
    engine = create_engine(get_settings().database_url)
    return sessionmaker(bind=engine)

def _naive(value: Optional[datetime]) -> Optional[datetime]:
    # Columns are timezone-naive UTC
    return value.replace(tzinfo=None) if value and value.tzinfo else value

class StatusReporter:
    """Writes run and step status for one pipeline run."""

    def __init__(self, run_id: str):
        self.run_id = run_id

    def update_run_status(
        self,
        status: str,
        error: Optional[str] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ):
        """Update pipeline run status in database."""
        session_factory = get_session_factory()

        with session_factory() as session:
            values = {"status": status, "updated_at": _naive(datetime.now(timezone.utc))}

            if error is not None:
                values["error"] = error
            if started_at:
                values["started_at"] = _naive(started_at)
            if finished_at:
                values["finished_at"] = _naive(finished_at)

            session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == self.run_id)
                .values(**values)
            )
            session.commit()
            logger.info(f"Updated run {self.run_id} status to {status}")

    def update_step_status(self, result: StepResult):
        """Update pipeline step status in database."""
        session_factory = get_session_factory()

        with session_factory() as session:
            values = {"status": result.status.value, "updated_at": _naive(datetime.now(timezone.utc))}

            for field in ("exit_code", "logs", "error"):
                value = getattr(result, field)
                if value is not None:
                    values[field] = value
            if result.started_at:
                values["started_at"] = _naive(result.started_at)
            if result.finished_at:
                values["finished_at"] = _naive(result.finished_at)

            session.execute(
                update(PipelineStep)
                .where(PipelineStep.run_id == self.run_id)
                .where(PipelineStep.name == result.name)
                .values(**values)
            )
            session.commit()
            logger.debug(f"Updated step {result.name} of run {self.run_id} to {result.status.value}")
