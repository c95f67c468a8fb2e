"""
Timeline persistence with database storage.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from proofline.db.database import SessionLocal
from proofline.db.models import Bake as DBBake, TimelineStep as DBTimelineStep
from proofline.errors import DatabaseError, ErrorCode, TimelineNotFoundError
from proofline.models.schemas import BakeStatus, Step, Timeline
from proofline.utils.timeutils import ensure_utc

logger = logging.getLogger(__name__)


def _step_from_row(row: DBTimelineStep) -> Step:
    return Step(
        id=row.step_id,
        step_index=row.step_index,
        name=row.name,
        instructions=row.instructions or "",
        status=row.status,
        scheduled_start=ensure_utc(row.scheduled_start),
        scheduled_end=ensure_utc(row.scheduled_end),
        estimated_duration_minutes=row.estimated_duration_minutes,
        actual_duration_minutes=row.actual_duration_minutes,
        is_adaptive=row.is_adaptive,
        is_overnight=row.is_overnight,
        can_overlap=row.can_overlap,
        adaptive_check_interval_minutes=row.adaptive_check_interval_minutes,
        ended_at=ensure_utc(row.ended_at) if row.ended_at else None,
    )


def _copy_step_to_row(step: Step, row: DBTimelineStep) -> None:
    row.step_index = step.step_index
    row.name = step.name
    row.instructions = step.instructions
    row.status = step.status
    row.scheduled_start = step.scheduled_start
    row.scheduled_end = step.scheduled_end
    row.estimated_duration_minutes = step.estimated_duration_minutes
    row.actual_duration_minutes = step.actual_duration_minutes
    row.is_adaptive = step.is_adaptive
    row.is_overnight = step.is_overnight
    row.can_overlap = step.can_overlap
    row.adaptive_check_interval_minutes = step.adaptive_check_interval_minutes
    row.ended_at = step.ended_at


class TimelineStore(Protocol):
    """
    Protocol for timeline persistence.

    SqlTimelineStore implements it for the API; the CLI uses a JSON file.
    """

    def create_timeline(self, timeline: Timeline) -> None:
        ...

    def load_timeline(self, bake_id: str) -> Timeline:
        """
        Load the stored timeline of a bake.

        Raises:
            TimelineNotFoundError: No bake with this id
        """
        ...

    def list_bake_ids(self, status: Optional[BakeStatus] = None) -> List[str]:
        ...

    def save_step_mutations(
        self,
        bake_id: str,
        changed_steps: List[Step],
        bake_status: Optional[BakeStatus] = None,
        paused_at: Optional[datetime] = None,
    ) -> None:
        """
        Replace the stored copies of the changed steps.

        Raises:
            ProoflineError: The write failed; the caller rolls back
        """
        ...

    def delete_timeline(self, bake_id: str) -> bool:
        ...


class SqlTimelineStore:
    """
    Persistence collaborator for timelines.

    Opens a short-lived session per call, the same way the background jobs
    do, because the bake service outlives any single request.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        """
        Initialize the timeline store.

        Args:
            session_factory: Returns a new SQLAlchemy session
        """
        self.session_factory = session_factory

    def create_timeline(self, timeline: Timeline) -> None:
        """Insert a new bake with all of its steps."""
        db = self.session_factory()
        try:
            bake = DBBake(
                id=timeline.bake_id,
                name=timeline.name,
                status=timeline.status,
                paused_at=timeline.paused_at,
                created_at=timeline.created_at,
            )
            for step in timeline.steps:
                row = DBTimelineStep(bake_id=timeline.bake_id, step_id=step.id)
                _copy_step_to_row(step, row)
                bake.steps.append(row)
            db.add(bake)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception(f"Failed to create timeline for bake {timeline.bake_id}")
            raise DatabaseError(
                f"Failed to create timeline: {str(e)}",
                details={"bake_id": timeline.bake_id},
            ) from e
        finally:
            db.close()

    def load_timeline(self, bake_id: str) -> Timeline:
        """
        Load a bake's timeline.

        Raises:
            TimelineNotFoundError: No bake with this id
        """
        db = self.session_factory()
        try:
            bake = db.query(DBBake).filter(DBBake.id == bake_id).first()
            if bake is None:
                raise TimelineNotFoundError(bake_id)

            return Timeline(
                bake_id=bake.id,
                name=bake.name,
                status=bake.status,
                steps=[_step_from_row(row) for row in bake.steps],
                paused_at=ensure_utc(bake.paused_at) if bake.paused_at else None,
                created_at=ensure_utc(bake.created_at),
            )
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to load timeline: {str(e)}",
                error_code=ErrorCode.DATABASE_CONNECTION_ERROR,
                details={"bake_id": bake_id},
            ) from e
        finally:
            db.close()

    def list_bake_ids(self, status: Optional[BakeStatus] = None) -> List[str]:
        """Ids of stored bakes, optionally filtered by lifecycle state."""
        db = self.session_factory()
        try:
            query = db.query(DBBake.id)
            if status is not None:
                query = query.filter(DBBake.status == status)
            return [bake_id for (bake_id,) in query.order_by(DBBake.created_at).all()]
        finally:
            db.close()

    def save_step_mutations(
        self,
        bake_id: str,
        changed_steps: List[Step],
        bake_status: Optional[BakeStatus] = None,
        paused_at: Optional[datetime] = None,
    ) -> None:
        """
        Write changed steps, and optionally the bake's lifecycle state, in one transaction.

        Args:
            bake_id: Bake the steps belong to
            changed_steps: Steps whose stored rows are replaced
            bake_status: New bake status; ``paused_at`` is written along with it
            paused_at: When the bake was paused, or None to clear

        Raises:
            TimelineNotFoundError: No bake with this id
            DatabaseError: The write failed and was rolled back
        """
        db = self.session_factory()
        try:
            bake = db.query(DBBake).filter(DBBake.id == bake_id).first()
            if bake is None:
                raise TimelineNotFoundError(bake_id)

            rows = {row.step_id: row for row in bake.steps}
            for step in changed_steps:
                row = rows.get(step.id)
                if row is None:
                    row = DBTimelineStep(bake_id=bake_id, step_id=step.id)
                    bake.steps.append(row)
                _copy_step_to_row(step, row)

            if bake_status is not None:
                bake.status = bake_status
                bake.paused_at = paused_at

            db.commit()
            logger.debug(f"Saved {len(changed_steps)} step mutations for bake {bake_id}")
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception(f"Failed to save step mutations for bake {bake_id}")
            raise DatabaseError(
                f"Failed to save step mutations: {str(e)}",
                details={"bake_id": bake_id, "step_ids": [step.id for step in changed_steps]},
            ) from e
        finally:
            db.close()

    def delete_timeline(self, bake_id: str) -> bool:
        """
        Delete a bake and its steps.

        Returns:
            True if the bake existed
        """
        db = self.session_factory()
        try:
            bake = db.query(DBBake).filter(DBBake.id == bake_id).first()
            if bake is None:
                return False
            db.delete(bake)
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            raise DatabaseError(
                f"Failed to delete timeline: {str(e)}",
                details={"bake_id": bake_id},
            ) from e
        finally:
            db.close()
