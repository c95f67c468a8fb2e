#!/usr/bin/env python3
"""
Demo script to walk a sourdough bake through the Proofline engine.
Simulates a bake that runs late overnight to show recalibration and alarms.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from proofline.db.database import Base
from proofline.db import models  # noqa: F401
from proofline.engine.notification_backend import InMemoryNotificationBackend
from proofline.engine.notification_scheduler import NotificationScheduler
from proofline.models.schemas import (
    ConfirmReadyCommand, MarkDoneCommand, RecalibrateCommand, RecalibrationMode,
    RecalibrationRequest, StartBakeRequest, StepStatus, StepTemplate,
)
from proofline.services.analytics_service import AnalyticsTap
from proofline.services.bake_service import BakeService
from proofline.services.timeline_store import SqlTimelineStore


class DemoClock:
    """Clock the demo moves forward by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int):
        self.now += timedelta(minutes=minutes)


def print_section(title: str):
    """Print a formatted section header."""
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70 + "\n")


def print_timeline(timeline, title="TIMELINE"):
    """Print a timeline in a readable format."""
    print(f"\n{title}  [{timeline.status.value}]")
    print("-" * 70)
    for step in timeline.steps:
        status_icon = {
            StepStatus.COMPLETED: "✓",
            StepStatus.SKIPPED: "↷",
            StepStatus.ACTIVE: "▶",
        }.get(step.status, "○")
        print(
            f"  {status_icon} {step.name:20} {step.scheduled_start:%a %H:%M} → "
            f"{step.scheduled_end:%a %H:%M} ({step.estimated_duration_minutes} min)"
        )


def print_alarms(alarms):
    print(f"\n🔔 {len(alarms)} alarms scheduled:")
    for alarm in alarms[:8]:
        print(f"  • {alarm.scheduled_time:%a %H:%M}  {alarm.kind.value}")
    if len(alarms) > 8:
        print(f"  ... and {len(alarms) - 8} more")


def main():
    """Run the bake demonstration."""
    print_section("Proofline Bake Timeline Demo")

    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)

    clock = DemoClock(datetime(2025, 3, 1, 15, 0, tzinfo=timezone.utc))
    backend = InMemoryNotificationBackend()
    analytics = AnalyticsTap()
    service = BakeService(
        store=SqlTimelineStore(sessionmaker(bind=engine)),
        notification_scheduler=NotificationScheduler(backend),
        analytics=analytics,
        clock=clock,
    )

    # STEP 1: Start the bake
    print_section("STEP 1: Start a Country Loaf at 15:00")

    started = service.start_bake(StartBakeRequest(
        name="Country loaf",
        steps=[
            StepTemplate(name="Mix", estimated_duration_minutes=30),
            StepTemplate(name="Bulk fermentation", estimated_duration_minutes=240, is_adaptive=True),
            StepTemplate(name="Shape", estimated_duration_minutes=20),
            StepTemplate(name="Cold retard", estimated_duration_minutes=600),
            StepTemplate(name="Bake", estimated_duration_minutes=45),
        ],
    ))
    bake_id = started.bake_id
    steps = {step.name: step.id for step in started.timeline.steps}

    print_timeline(started.timeline, "INITIAL TIMELINE")
    print_alarms(backend.list_alarms(bake_id))

    # STEP 2: Mix runs long
    print_section("STEP 2: Mixing Takes 45 Minutes Instead of 30")

    clock.advance(45)
    result = service.dispatch(bake_id, MarkDoneCommand(step_id=steps["Mix"]))
    print_timeline(result.timeline)
    print(f"\n⏰ Needs recalibration: {result.needs_recalibration}")

    # STEP 3: Bulk is slow, push everything back
    print_section("STEP 3: Cold Kitchen - Shift Remaining Steps by 60 Minutes")

    clock.advance(240)
    result = service.dispatch(bake_id, RecalibrateCommand(request=RecalibrationRequest(
        mode=RecalibrationMode.SHIFT_ALL, delta_minutes=60,
    )))
    print(f"Changed {len(result.changed_step_ids)} steps")
    print_timeline(result.timeline, "SHIFTED TIMELINE")
    print_alarms(result.alarms)

    # STEP 4: Dough is ready
    print_section("STEP 4: Dough Has Doubled")

    clock.advance(50)
    result = service.dispatch(bake_id, ConfirmReadyCommand(step_id=steps["Bulk fermentation"]))
    print_timeline(result.timeline)
    print_alarms(result.alarms)

    # STEP 5: Summary
    print_section("BAKE ANALYTICS")

    summary = analytics.get_bake_analytics(bake_id)
    print(f"✓ Events recorded: {summary.total_events}")
    print(f"✓ Steps completed: {summary.steps_completed}")
    print(f"✓ Recalibrations: {summary.times_recalibrated}")
    print(f"✓ Average step drift: {summary.average_step_drift_minutes} min")

    print("\n" + "=" * 70)
    print("  Demo Complete ✨")
    print("=" * 70 + "\n")


if __name__ == '__main__':
    main()
