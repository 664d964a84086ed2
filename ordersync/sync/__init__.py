"""Inbound event pipeline: scope, dedup, normalization, store and reconciliation."""

from ordersync.sync.dedup import IdempotencyDeduper
from ordersync.sync.normalizer import (
    NormalizeResult,
    factory_order_from_wire,
    normalize,
    order_from_wire,
    returns_from_wire,
)
from ordersync.sync.pipeline import PipelineOutcome, SyncEngine, ViewHandle, render_message
from ordersync.sync.reconciler import Reconciler, ReconcileOutcome
from ordersync.sync.runtime import SessionRuntime
from ordersync.sync.scope import EVENT_VISIBILITY, VisibilityRule, is_visible, visible_items
from ordersync.sync.store import ApplyResult, StateStore, StoreChange, StoreSnapshot

__all__ = [
    "EVENT_VISIBILITY",
    "ApplyResult",
    "IdempotencyDeduper",
    "NormalizeResult",
    "PipelineOutcome",
    "ReconcileOutcome",
    "Reconciler",
    "SessionRuntime",
    "StateStore",
    "StoreChange",
    "StoreSnapshot",
    "SyncEngine",
    "ViewHandle",
    "VisibilityRule",
    "factory_order_from_wire",
    "is_visible",
    "normalize",
    "order_from_wire",
    "render_message",
    "returns_from_wire",
    "visible_items",
]
