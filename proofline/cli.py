"""
CLI interface for driving a Proofline bake from the terminal.

State is kept in a JSON file instead of the database; alarms are held in
memory and shown after every command.
"""
import click
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from proofline.errors import TimelineNotFoundError
from proofline.models.schemas import (
    ActivateNextCommand, BakeStatus, CommandResult, ConfirmReadyCommand,
    MarkDoneCommand, PauseBakeCommand, RecalibrateCommand, RecalibrationMode,
    RecalibrationRequest, ResumeBakeCommand, SkipStepCommand, StartBakeRequest,
    Step, StepStatus, StepTemplate, Timeline,
)
from proofline.engine.notification_backend import InMemoryNotificationBackend
from proofline.engine.notification_scheduler import NotificationScheduler
from proofline.services.analytics_service import AnalyticsTap
from proofline.services.bake_service import BakeService


# Global state file
STATE_FILE = Path("proofline_state.json")

# A basic sourdough loaf, used when `start` gets no --step options
DEFAULT_STEPS = [
    StepTemplate(name="Feed starter", estimated_duration_minutes=240, is_adaptive=True,
                 instructions="Wait until doubled"),
    StepTemplate(name="Autolyse", estimated_duration_minutes=60),
    StepTemplate(name="Mix", estimated_duration_minutes=30),
    StepTemplate(name="Bulk fermentation", estimated_duration_minutes=300, is_adaptive=True),
    StepTemplate(name="Shape", estimated_duration_minutes=20),
    StepTemplate(name="Cold retard", estimated_duration_minutes=720, is_overnight=True),
    StepTemplate(name="Bake", estimated_duration_minutes=45),
]

STATUS_ICONS = {
    StepStatus.PENDING: "  ",
    StepStatus.ACTIVE: "▶ ",
    StepStatus.COMPLETED: "✓ ",
    StepStatus.SKIPPED: "↷ ",
}


class JsonTimelineStore:
    """Timeline store backed by the CLI state file."""

    def __init__(self, path: Path = STATE_FILE):
        self.path = path
        self.current_bake_id: Optional[str] = None
        self.timelines: Dict[str, Timeline] = {}
        self.load_state()

    def load_state(self):
        """Load state from file if exists."""
        if not self.path.exists():
            return
        try:
            with open(self.path, 'r') as f:
                state_data = json.load(f)
        except (OSError, ValueError) as e:
            click.echo(f"Warning: Could not load state: {e}")
            return

        self.current_bake_id = state_data.get('current_bake_id')
        self.timelines = {
            bake_id: Timeline.model_validate(data)
            for bake_id, data in state_data.get('bakes', {}).items()
        }

    def save_state(self):
        """Save state to file."""
        state_data = {
            'current_bake_id': self.current_bake_id,
            'bakes': {
                bake_id: timeline.model_dump(mode='json')
                for bake_id, timeline in self.timelines.items()
            },
        }
        with open(self.path, 'w') as f:
            json.dump(state_data, f, indent=2)

    def create_timeline(self, timeline: Timeline) -> None:
        self.timelines[timeline.bake_id] = timeline
        self.current_bake_id = timeline.bake_id
        self.save_state()

    def load_timeline(self, bake_id: str) -> Timeline:
        if bake_id not in self.timelines:
            raise TimelineNotFoundError(bake_id)
        return self.timelines[bake_id]

    def list_bake_ids(self, status: Optional[BakeStatus] = None) -> List[str]:
        return [
            bake_id for bake_id, timeline in self.timelines.items()
            if status is None or timeline.status == status
        ]

    def save_step_mutations(
        self,
        bake_id: str,
        changed_steps: List[Step],
        bake_status: Optional[BakeStatus] = None,
        paused_at: Optional[datetime] = None,
    ) -> None:
        timeline = self.load_timeline(bake_id)
        changed = {step.id: step for step in changed_steps}
        steps = [changed.get(step.id, step) for step in timeline.steps]
        update = {"steps": steps}
        if bake_status is not None:
            update.update(status=bake_status, paused_at=paused_at)
        self.timelines[bake_id] = timeline.model_copy(update=update)
        self.save_state()

    def delete_timeline(self, bake_id: str) -> bool:
        existed = self.timelines.pop(bake_id, None) is not None
        if self.current_bake_id == bake_id:
            self.current_bake_id = None
        self.save_state()
        return existed


class ProoflineCLI:
    """CLI application state manager."""

    def __init__(self):
        self.store = JsonTimelineStore()
        self.backend = InMemoryNotificationBackend()
        self.service = BakeService(
            store=self.store,
            notification_scheduler=NotificationScheduler(self.backend),
            analytics=AnalyticsTap(),
        )

    @property
    def bake_id(self) -> Optional[str]:
        return self.store.current_bake_id

    def dispatch(self, command) -> Optional[CommandResult]:
        if self.bake_id is None:
            click.echo("❌ No active bake. Start one with 'proofline start'")
            return None
        result = self.service.dispatch(self.bake_id, command)
        _display_result(result)
        if result.ok:
            _display_timeline(result.timeline)
            _display_alarms(self.backend.list_alarms(self.bake_id))
        return result


def _parse_step(value: str) -> StepTemplate:
    """Parse NAME:MINUTES[:adaptive|overnight|overlap...] into a step template."""
    parts = value.split(":")
    if len(parts) < 2 or not parts[1].isdigit():
        raise click.BadParameter(f"expected NAME:MINUTES[:flags], got '{value}'")
    flags = set(parts[2:])
    return StepTemplate(
        name=parts[0],
        estimated_duration_minutes=int(parts[1]),
        is_adaptive="adaptive" in flags,
        is_overnight="overnight" in flags,
        can_overlap="overlap" in flags,
    )


def _display_result(result: CommandResult):
    if not result.ok:
        click.echo(f"❌ {result.error.message}")
        return
    for warning in result.warnings:
        click.echo(f"⚠️  {warning.message}")
    if result.needs_recalibration:
        click.echo("⏰ Schedule has drifted. Consider 'proofline recalibrate'.")


def _display_timeline(timeline: Timeline):
    click.echo("\n" + "=" * 60)
    click.echo(f"BAKE: {timeline.name}  [{timeline.status.value}]")
    click.echo("=" * 60)
    for step in timeline.steps:
        tags = []
        if step.is_adaptive:
            tags.append("adaptive")
        if step.runs_overnight:
            tags.append("overnight")
        tag_text = f" ({', '.join(tags)})" if tags else ""
        click.echo(
            f"{STATUS_ICONS[step.status]}{step.step_index:2}. {step.name:24}"
            f" {step.scheduled_start:%a %H:%M} → {step.scheduled_end:%a %H:%M}"
            f" {step.estimated_duration_minutes:4} min{tag_text}"
        )
        click.echo(f"      id: {step.id}")


def _display_alarms(alarms):
    if not alarms:
        return
    click.echo(f"\n🔔 ALARMS ({len(alarms)})")
    for alarm in alarms[:10]:
        click.echo(f"  {alarm.scheduled_time:%a %H:%M}  {alarm.kind.value:15} step {alarm.step_id}")
    if len(alarms) > 10:
        click.echo(f"  ... and {len(alarms) - 10} more")


@click.group()
@click.pass_context
def cli(ctx):
    """Proofline - Sourdough Bake Timeline Engine"""
    ctx.obj = ProoflineCLI()


@cli.command()
@click.argument('name', default="Sourdough loaf")
@click.option('--step', 'steps', multiple=True, help='NAME:MINUTES[:adaptive][:overnight][:overlap]')
@click.pass_obj
def start(app: ProoflineCLI, name: str, steps):
    """Start a new bake."""
    templates = [_parse_step(value) for value in steps] or DEFAULT_STEPS
    result = app.service.start_bake(StartBakeRequest(name=name, steps=templates))
    _display_result(result)
    if result.ok:
        click.echo(f"\n🍞 Started bake {result.bake_id}")
        _display_timeline(result.timeline)
        _display_alarms(app.backend.list_alarms(result.bake_id))


@cli.command()
@click.pass_obj
def show(app: ProoflineCLI):
    """Show the current bake."""
    if app.bake_id is None:
        click.echo("❌ No active bake. Start one with 'proofline start'")
        return
    view = app.service.get_timeline_view(app.bake_id)
    _display_timeline(view.timeline)
    if view.needs_recalibration:
        click.echo("\n⏰ Schedule has drifted. Consider 'proofline recalibrate'.")
    for conflict in view.conflicts:
        click.echo(f"⚠️  {conflict.reason}")
    _display_alarms(app.backend.list_alarms(app.bake_id))


@cli.command()
@click.argument('step_id')
@click.pass_obj
def done(app: ProoflineCLI, step_id: str):
    """Mark an active step done."""
    app.dispatch(MarkDoneCommand(step_id=step_id))


@cli.command()
@click.argument('step_id')
@click.option('--pull-forward', is_flag=True, help='Move later steps earlier by the unused time')
@click.pass_obj
def skip(app: ProoflineCLI, step_id: str, pull_forward: bool):
    """Skip a step."""
    app.dispatch(SkipStepCommand(step_id=step_id, pull_forward=pull_forward))


@cli.command()
@click.argument('step_id')
@click.pass_obj
def ready(app: ProoflineCLI, step_id: str):
    """Confirm an adaptive step is ready."""
    app.dispatch(ConfirmReadyCommand(step_id=step_id))


@cli.command(name='next')
@click.pass_obj
def next_step(app: ProoflineCLI):
    """Activate the next pending step."""
    app.dispatch(ActivateNextCommand())


@cli.command()
@click.argument('mode', type=click.Choice([mode.value for mode in RecalibrationMode]))
@click.argument('delta', type=int)
@click.option('--target', default=None, help='Step id (edit_single only)')
@click.pass_obj
def recalibrate(app: ProoflineCLI, mode: str, delta: int, target: Optional[str]):
    """Recalibrate the remaining schedule by DELTA minutes."""
    request = RecalibrationRequest(
        mode=RecalibrationMode(mode), delta_minutes=delta, target_step_id=target
    )
    app.dispatch(RecalibrateCommand(request=request))


@cli.command()
@click.pass_obj
def pause(app: ProoflineCLI):
    """Pause the current bake."""
    app.dispatch(PauseBakeCommand())


@cli.command()
@click.pass_obj
def resume(app: ProoflineCLI):
    """Resume the current bake."""
    app.dispatch(ResumeBakeCommand())


if __name__ == '__main__':
    cli()
