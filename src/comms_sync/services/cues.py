from __future__ import annotations

import logging
from datetime import datetime, timedelta

from comms_sync.application.dto.toast import Toast
from comms_sync.application.ports.clock import Clock
from comms_sync.application.ports.presenter import Presenter
from comms_sync.domain.value_objects.enums import CueKind, Severity, ToastVariant

logger = logging.getLogger(__name__)

# Played on every occurrence: the user's own send and critical alerts.
UNTHROTTLED = frozenset({CueKind.SEND, CueKind.CRITICAL})


class CueGate:
    """Forwards cues to the presenter, at most one per cooldown window.

    Send and critical cues always play.
    """

    def __init__(self, presenter: Presenter, clock: Clock, cooldown: timedelta) -> None:
        self._presenter = presenter
        self._clock = clock
        self._cooldown = cooldown
        self._last_played: datetime | None = None

    def play(self, kind: CueKind) -> bool:
        now = self._clock.now()
        if (
            kind not in UNTHROTTLED
            and self._last_played is not None
            and now - self._last_played < self._cooldown
        ):
            logger.debug("Cue %s suppressed by cooldown", kind)
            return False
        self._last_played = now
        self._presenter.play_cue(kind)
        return True


def cue_for(severity: Severity) -> CueKind:
    return CueKind.CRITICAL if severity == Severity.CRITICAL else CueKind.NOTIFY


def error_toast(title: str, detail: str) -> Toast:
    return Toast(title=title, description=detail or title, variant=ToastVariant.DESTRUCTIVE)
