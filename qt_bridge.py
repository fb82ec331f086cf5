"""
Qt bridge for batch activation tasks.

Runs a BatchActivationTask inside a QThread and re-emits its notifications as
Qt signals.  Qt queues cross-thread signal emissions to the receiver's
thread, so a GUI can connect widgets directly.
"""

import logging
import threading
from typing import Optional

from PySide6.QtCore import QThread, Signal

from batch_task import BatchActivationTask, BatchResult, ModOutcome

_log = logging.getLogger(__name__)


class BatchTaskThread(QThread):
    """Run a batch task off the main thread."""

    progress_signal = Signal(int, int)  # value, maximum
    mod_signal = Signal(str, str, str)  # mod id, status, message
    confirm_signal = Signal(str)  # prompt text
    ended_signal = Signal(str, str)  # final state, first failing mod ("" if none)

    def __init__(self, task: BatchActivationTask, ask_confirmation: bool = True):
        super().__init__()
        self.task = task
        self.ask_confirmation = ask_confirmation
        self._answer: Optional[bool] = None
        self._answered = threading.Event()
        task.progress.on_progress(self.progress_signal.emit)
        task.progress.on_mod_finished(self._emit_mod)
        task.progress.on_ended(self._emit_ended)

    def _emit_mod(self, outcome: ModOutcome):
        self.mod_signal.emit(outcome.mod_id, outcome.status, outcome.message)

    def _emit_ended(self, result: BatchResult):
        self.ended_signal.emit(result.state.value, result.failed_mod or "")

    def _confirm(self, prompt: str) -> bool:
        """Ask the UI thread and block the worker until it answers."""
        self._answered.clear()
        self._answer = None
        self.confirm_signal.emit(prompt)
        self._answered.wait()
        return bool(self._answer)

    def answer_confirmation(self, accepted: bool):
        """Called from the UI thread in response to ``confirm_signal``."""
        self._answer = accepted
        self._answered.set()

    def cancel(self):
        self.task.cancel()
        # Unblock a pending confirmation so the current mod can settle.
        if not self._answered.is_set():
            self.answer_confirmation(False)

    def run(self):
        try:
            self.task.run(self._confirm if self.ask_confirmation else None)
        except Exception as e:
            _log.exception("Batch task could not run")
            self.ended_signal.emit("errored", str(e))
