"""
Renders one run's progress events in the terminal with a Rich progress bar.
"""

import logging

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from trackgrab.models.progress import STAGE_MESSAGES, EventType, ProgressEvent, Stage

log = logging.getLogger("trackgrab")

STAGE_STYLES = {
    Stage.CREATED: "dim",
    Stage.RESOLVING_METADATA: "cyan",
    Stage.MATCHING_CATALOG: "cyan",
    Stage.ACQUIRING_AUDIO: "blue",
    Stage.FETCHING_ARTWORK: "magenta",
    Stage.MUXING: "magenta",
    Stage.FINISHED: "green",
}


class ProgressManager:
    """
    Feeds ProgressEvents into a Rich Progress display. Stage changes update
    the description; percentages move the bar.
    """

    def __init__(self, console: Console, quiet: bool = False):
        self.console = console
        self.quiet = quiet
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            TimeElapsedColumn(),
            console=console,
            transient=False,
        )
        self._task_id: TaskID | None = None
        self._started = False
        self.last_event: ProgressEvent | None = None

    def _describe(self, stage: Stage) -> str:
        style = STAGE_STYLES.get(stage, "white")
        return f"[{style}]{STAGE_MESSAGES.get(stage, stage.value)}[/{style}]"

    def handle(self, event: ProgressEvent) -> None:
        self.last_event = event
        if self.quiet:
            return
        if self._task_id is None:
            self._task_id = self.progress.add_task(self._describe(event.stage), total=100)

        if event.type is EventType.PROGRESS:
            if event.percent is None:
                self.progress.update(self._task_id, description=self._describe(event.stage))
                if event.stage is Stage.ACQUIRING_AUDIO:
                    self.progress.update(self._task_id, completed=0)
            else:
                self.progress.update(self._task_id, completed=event.percent)
        elif event.type is EventType.DONE:
            self.progress.update(
                self._task_id, description=self._describe(Stage.FINISHED), completed=100
            )
        else:
            self.progress.update(
                self._task_id, description=f"[red]✗ {event.message or 'Failed'}[/red]"
            )

    def __enter__(self):
        if not self.quiet:
            self.progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started:
            self.progress.stop()
        return False
