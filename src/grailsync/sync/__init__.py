"""Sync module: orchestrator, hydration, identity, market cache, and the Discogs client."""

from grailsync.sync.engine import SyncInProgressError, SyncOrchestrator, SyncState
from grailsync.sync.hydration import HydrationCategory, HydrationReconciler, HydrationStatus
from grailsync.sync.identity import IdentityResolver, LoginRedirect
from grailsync.sync.loading import LoadingPhase, LoadingPhaseMachine, LoadingSignals
from grailsync.sync.market import MarketDataCache

__all__ = [
    "HydrationCategory",
    "HydrationReconciler",
    "HydrationStatus",
    "IdentityResolver",
    "LoadingPhase",
    "LoadingPhaseMachine",
    "LoadingSignals",
    "LoginRedirect",
    "MarketDataCache",
    "SyncInProgressError",
    "SyncOrchestrator",
    "SyncState",
]
