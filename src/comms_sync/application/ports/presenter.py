from __future__ import annotations

from typing import Protocol

from comms_sync.application.dto.toast import Toast
from comms_sync.domain.value_objects.enums import CueKind


class Presenter(Protocol):
    """What the synchronizers need from the UI: sounds, toasts, login redirect."""

    def play_cue(self, kind: CueKind) -> None: ...

    def show_toast(self, toast: Toast) -> None: ...

    def redirect_to_login(self, reason: str) -> None: ...
