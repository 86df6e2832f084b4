"""Loading phase derived from identity resolution and sync status."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from grailsync.sync.identity import LoginRedirect

log = structlog.get_logger(__name__)

COMPLETE_HOLD_SECONDS = 0.5


class LoadingPhase(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETE = "complete"


@dataclass(frozen=True)
class LoadingSignals:
    identity_loading: bool = False
    has_session: bool = False
    collection_resolved: bool = False
    sync_running: bool = False


class LoadingPhaseMachine:
    """Single "what should the screen show" value.

    ``complete`` is only reachable after the sync was seen running during the
    current ``syncing`` phase, and it falls back to ``idle`` after
    *hold_seconds* so a progress bar can visibly reach the end.
    """

    def __init__(
        self,
        *,
        hold_seconds: float = COMPLETE_HOLD_SECONDS,
        on_change: Callable[[LoadingPhase], None] | None = None,
    ) -> None:
        self._hold = hold_seconds
        self._on_change = on_change
        self._phase = LoadingPhase.IDLE
        self._sync_observed = False
        self._timer: asyncio.TimerHandle | None = None
        self.history: list[LoadingPhase] = [self._phase]

    @property
    def phase(self) -> LoadingPhase:
        return self._phase

    def _set(self, phase: LoadingPhase) -> None:
        self.history.append(phase)
        if phase is self._phase:
            return
        log.debug("loading_phase", old=self._phase.value, new=phase.value)
        self._phase = phase
        if self._on_change is not None:
            self._on_change(phase)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _release(self) -> None:
        self._timer = None
        if self._phase is LoadingPhase.COMPLETE:
            self._set(LoadingPhase.IDLE)

    def update(self, signals: LoadingSignals) -> LoadingPhase:
        """Feed the latest signals; records and returns the resulting phase."""
        phase = self._phase

        if phase is not LoadingPhase.SYNCING:
            if signals.identity_loading:
                self._cancel_timer()
                self._sync_observed = signals.sync_running
                self._set(LoadingPhase.SYNCING)
            else:
                self._set(phase)
            return self._phase

        if signals.sync_running:
            self._sync_observed = True
            self._set(LoadingPhase.SYNCING)
        elif signals.identity_loading:
            self._set(LoadingPhase.SYNCING)
        elif self._sync_observed:
            self._sync_observed = False
            self._set(LoadingPhase.COMPLETE)
            self._timer = asyncio.get_running_loop().call_later(self._hold, self._release)
        elif not signals.has_session or signals.collection_resolved:
            self._set(LoadingPhase.IDLE)
        else:
            # Session restored but the sync has not started yet.
            self._set(LoadingPhase.SYNCING)
        return self._phase

    def on_foreground(self, redirect: LoginRedirect) -> LoadingPhase:
        """The app regained focus; a redirect still in flight means the user backed out."""
        if redirect.in_flight:
            redirect.clear()
            self._cancel_timer()
            self._sync_observed = False
            log.info("login_abandoned")
            self._set(LoadingPhase.IDLE)
        return self._phase

    def reset(self) -> None:
        self._cancel_timer()
        self._sync_observed = False
        self._set(LoadingPhase.IDLE)
