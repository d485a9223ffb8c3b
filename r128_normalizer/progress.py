from __future__ import annotations

from typing import Optional

from tqdm import tqdm

STAGE_LABELS = {
    "measure_input": "Calculating input loudness",
    "limit": "Limiting",
    "measure_output": "Verifying output loudness",
}


class ConsoleProgress:
    """Render controller progress ticks as one tqdm bar per pass.

    Use as the ``on_progress`` observer of ``ConvergenceController``; call
    ``close()`` when the file is done.
    """

    def __init__(self, file_label: str = "", disable: bool = False):
        self.file_label = file_label
        self.disable = disable
        self._bar: Optional[tqdm] = None
        self._stage: Optional[str] = None
        self._last = 0

    def __call__(self, stage: str, current: int, total: int) -> None:
        if self._bar is None or stage != self._stage or current < self._last:
            self._open(stage, total)
        if current > self._last:
            self._bar.update(current - self._last)
            self._last = current
        if current >= total:
            self.close()

    def _open(self, stage: str, total: int) -> None:
        self.close()
        label = STAGE_LABELS.get(stage, stage)
        if self.file_label:
            label = f"{self.file_label} | {label}"
        self._bar = tqdm(total=total, desc=label, unit="smp", unit_scale=True, leave=False, disable=self.disable)
        self._stage = stage
        self._last = 0

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
        self._bar = None
        self._stage = None
        self._last = 0
