from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Progress display with tqdm (TTY only).

The orchestrator reports ``(percent, message)`` at stage boundaries; ProgressTracker turns
those into a single 0-100 bar for the CLI. In non-TTY environments (CI, worker logs) the
bar is disabled to avoid ANSI control sequence spam.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    """Check if stdout is a TTY and progress should be displayed."""
    return sys.stdout.isatty()


class ProgressTracker:
    """Stage progress bar for one ingestion job.

    Usable directly as the orchestrator's ``on_progress`` callback.
    """

    def __init__(self, description: str = "Ingesting", *, enabled: bool | None = None) -> None:
        """Initialize progress tracker.

        Args:
            description: Base description for the progress bar
            enabled: Force the bar on/off (defaults to TTY detection)
        """
        self.description = description
        self.percent = 0
        self.message = ""
        self.enabled = is_tty_enabled() if enabled is None else enabled
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=100,
                desc=description,
                unit="%",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def __call__(self, percent: int, message: str) -> None:
        self.update(percent, message)

    def update(self, percent: int, message: str) -> None:
        """Move the bar forward to ``percent`` (never backwards) and show ``message``."""
        percent = max(0, min(100, percent))
        delta = percent - self.percent
        self.message = message
        if delta > 0:
            self.percent = percent
        if self.enabled and self.pbar is not None:
            if delta > 0:
                self.pbar.update(delta)
            self.pbar.set_postfix_str(message)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
