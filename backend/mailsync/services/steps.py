"""Checkpointed step execution for resumable sync jobs.

Each named step's JSON result is committed in the same transaction as the
database effects of that step. Replaying a job after a crash returns the stored
result for completed steps and runs only the first incomplete step onward.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..models import SyncStep

logger = logging.getLogger(__name__)


class StepRunner:
    def __init__(self, db: Session, job_id: str):
        self.db = db
        self.job_id = job_id
        self.replayed = 0
        self.executed = 0

    def _completed_step(self, name: str) -> Optional[SyncStep]:
        return (
            self.db.query(SyncStep)
            .filter(SyncStep.job_id == self.job_id, SyncStep.step_name == name, SyncStep.completed.is_(True))
            .first()
        )

    def run(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run `fn` once per job; later calls with the same name return its stored result."""
        done = self._completed_step(name)
        if done is not None:
            self.replayed += 1
            logger.debug(f"Job {self.job_id}: step {name} already completed; replaying stored result")
            return done.result

        try:
            result = fn()
            self.db.add(
                SyncStep(
                    job_id=self.job_id,
                    step_name=name,
                    completed=True,
                    result=result,
                    completed_at=datetime.utcnow(),
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.executed += 1
        return result

    def completed_steps(self) -> list[str]:
        rows = (
            self.db.query(SyncStep.step_name)
            .filter(SyncStep.job_id == self.job_id, SyncStep.completed.is_(True))
            .order_by(SyncStep.id)
            .all()
        )
        return [r[0] for r in rows]
