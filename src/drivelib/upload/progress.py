"""Rich progress display for resumable uploads.

One task per file, measured in bytes, with a status column that shows the
controller's lifecycle (probing, transmitting, retry, completed).
"""

from __future__ import annotations

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from drivelib.models import TransferStatus

_STATUS_STYLE: dict[TransferStatus, str] = {
    TransferStatus.NEGOTIATING: "opening session",
    TransferStatus.PROBING: "[yellow]probing[/yellow]",
    TransferStatus.TRANSMITTING: "uploading",
    TransferStatus.COMPLETED: "[green]done[/green]",
    TransferStatus.FAILED: "[red]FAILED[/red]",
    TransferStatus.ABORTED: "[red]aborted[/red]",
}


class UploadProgressTracker:
    """Byte-level Rich progress tracker.

    Usage::

        with UploadProgressTracker() as tracker:
            task = tracker.add_file("report.pdf", total_bytes)
            controller = UploadController(
                ...,
                on_progress=tracker.progress_callback(task),
                on_status=tracker.status_callback(task),
            )
            await controller.run()
    """

    def __init__(self) -> None:
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
        )
        self._retries: dict[TaskID, int] = {}
        self._last_status: dict[TaskID, TransferStatus] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> UploadProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Per-file tracking
    # ------------------------------------------------------------------

    def add_file(self, name: str, total_bytes: int) -> TaskID:
        task = self._progress.add_task(
            f"[blue]{_truncate(name)}",
            total=total_bytes,
            status="starting...",
        )
        self._retries[task] = 0
        return task

    def update_bytes(self, task: TaskID, done: int, total: int) -> None:
        self._progress.update(task, completed=done, total=total)

    def update_status(self, task: TaskID, status: TransferStatus) -> None:
        previous = self._last_status.get(task)
        # transmitting -> probing is the controller's retry edge
        if previous == TransferStatus.TRANSMITTING and status == TransferStatus.PROBING:
            self._retries[task] += 1
        self._last_status[task] = status

        text = _STATUS_STYLE[status]
        if self._retries[task] and not status.terminal:
            text = f"{text} [yellow](retry {self._retries[task]})[/yellow]"
        self._progress.update(task, status=text)

    def progress_callback(self, task: TaskID):
        return lambda done, total: self.update_bytes(task, done, total)

    def status_callback(self, task: TaskID):
        return lambda status: self.update_status(task, status)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def retries(self, task: TaskID) -> int:
        return self._retries.get(task, 0)


def _truncate(name: str, max_len: int = 40) -> str:
    """Truncate a display name, keeping its tail (usually the extension)."""
    if len(name) <= max_len:
        return name
    return "..." + name[-(max_len - 3) :]
