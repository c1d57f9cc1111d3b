"""Terminal progress for refresh batches with Rich-based rendering."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from rich.console import Console
from rich.errors import LiveError
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    SpinnerColumn,
    Task,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.text import Text


@dataclass
class BatchProgressState:
    total: int = 0
    completed: int = 0
    failed: int = 0
    current_source: str = ""


class SourceRateColumn(ProgressColumn):
    """显示每秒完成的信息源数量，格式为 "X.X 源/s" """

    def render(self, task: Task) -> Text:
        speed = task.finished_speed or task.speed
        if speed is None:
            return Text("", style="progress.percentage")
        return Text(f"{speed:.1f} 源/s", style="progress.percentage")


class BatchProgress:
    """
    刷新批次的进度条

    实例本身可直接作为 ``on_progress`` 回调传入编排器，
    ``record_error`` 可作为 ``on_error`` 回调。
    """

    def __init__(self, enabled: bool = True, console: Console | None = None, label: str = "刷新订阅") -> None:
        self.enabled = enabled
        self.console = console or Console()
        if enabled and not self.console.is_terminal:
            # 非TTY 环境下退化为静默模式
            self.enabled = False
        self.label = label
        self.state = BatchProgressState()
        self._progress: Progress | None = None
        self._task_id: TaskID | None = None
        self._lock = Lock()

    def __enter__(self) -> "BatchProgress":
        if not self.enabled:
            return self
        self._progress = Progress(
            SpinnerColumn(style="cyan"),
            TextColumn("[bold blue]{task.fields[label]:<10}", justify="left"),
            BarColumn(bar_width=None, complete_style="green", finished_style="green", pulse_style="cyan"),
            TaskProgressColumn(show_speed=False),
            TimeElapsedColumn(),
            SourceRateColumn(),
            TextColumn("[red]✗{task.fields[failed]:>3}", justify="right"),
            TextColumn("[dim]{task.fields[source]}", justify="left"),
            console=self.console,
            transient=True,
            refresh_per_second=12,
            expand=True,
        )
        try:
            self._progress.__enter__()
        except LiveError:
            # 同一控制台已存在活动进度条
            self.enabled = False
            self._progress = None
            return self
        self._task_id = self._progress.add_task(
            "refresh", total=None, label=self.label, failed=0, source="等待中…"
        )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._progress is None:
            return
        try:
            self._progress.stop()
        finally:
            self._progress.__exit__(exc_type, exc, tb)
            self._progress = None
            self._task_id = None

    def __call__(self, completed: int, total: int, source_name: str) -> None:
        with self._lock:
            self.state.completed = completed
            self.state.total = total
            self.state.current_source = source_name
            if self._progress is not None and self._task_id is not None:
                display = source_name if len(source_name) <= 40 else source_name[:37] + "..."
                self._progress.update(
                    self._task_id,
                    completed=completed,
                    total=total,
                    source=display,
                    failed=self.state.failed,
                )

    def record_error(self, error: BaseException, source_name: str) -> None:
        with self._lock:
            self.state.failed += 1
            if self._progress is not None and self._task_id is not None:
                self._progress.update(self._task_id, failed=self.state.failed)

    def summary(self) -> dict[str, int]:
        return {
            "completed": self.state.completed,
            "total": self.state.total,
            "failed": self.state.failed,
        }


__all__ = ["BatchProgress", "BatchProgressState", "SourceRateColumn"]
