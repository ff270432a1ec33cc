"""
LiveChart Core — Pane Synchronizer

Keeps one master pane and any number of follower panes showing the same
data and the same visible time window:

  - viewport changes on the master are pushed to every READY follower in
    the same event; a re-entrancy guard stops followers re-broadcasting
  - classified updates are applied as a full reload, a last-point patch, or
    an appended point
  - overlays are toggled declaratively: the desired set of series keys is
    diffed against what each pane already holds
  - layout notifications are debounced without a background thread; a
    pending one is published by the next call after its window passes

Cross-pane callbacks go through an explicit SubscriptionRegistry; every
subscription is a handle that is released on pane teardown.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from livechart.config import get_settings
from livechart.engines.chart_engine import RenderSurface, candle_point, candle_points, value_points
from livechart.error_handlers import SurfaceDisposedError, surface_guard
from livechart.models import (
    Append,
    Bar,
    Direction,
    FullReload,
    IndicatorSeries,
    OverlayCategory,
    PaneRole,
    PaneState,
    PaneViewport,
    PatternCollection,
    TickUpdate,
)
from livechart.utils.series import full_range

log = structlog.get_logger(__name__)

PRICE_SERIES = "price"

# Categories hosted on the master pane unless told otherwise
PRICE_CATEGORIES = frozenset({
    OverlayCategory.SMA,
    OverlayCategory.EMA,
    OverlayCategory.BOLLINGER,
    OverlayCategory.DIVERGENCES,
    OverlayCategory.SUPPORT_RESISTANCE,
    OverlayCategory.TRIANGLES,
    OverlayCategory.FLAGS,
    OverlayCategory.DOUBLE_TOPS,
    OverlayCategory.VOLUME_ANOMALIES,
    OverlayCategory.CANDLESTICKS,
})

_FIXED_INDICATOR_KEYS = {
    OverlayCategory.BOLLINGER: ("bb_upper", "bb_middle", "bb_lower"),
    OverlayCategory.MACD: ("macd_line", "macd_signal", "macd_histogram"),
    OverlayCategory.RSI: ("rsi",),
    OverlayCategory.STOCHASTIC: ("stoch_k", "stoch_d"),
    OverlayCategory.ATR: ("atr",),
    OverlayCategory.OBV: ("obv",),
    OverlayCategory.VOLUME_SMA: ("volume_sma",),
}

_HISTOGRAM_KEYS = frozenset({"macd_histogram"})

TOPIC_VIEWPORT = "viewport"
TOPIC_LAYOUT = "layout"


# ──────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────

class Subscription:
    """Handle for one registered callback. release() is idempotent."""

    def __init__(self, registry: "SubscriptionRegistry", topic: str, handler: Callable, owner: Optional[str]):
        self._registry = registry
        self.topic = topic
        self.handler = handler
        self.owner = owner
        self.active = True

    def release(self) -> None:
        if self.active:
            self.active = False
            self._registry._discard(self)


class SubscriptionRegistry:
    """Explicit publish/subscribe registry keyed by topic.

    Usage:
        registry = SubscriptionRegistry()
        sub = registry.subscribe("viewport", handler, owner="rsi")
        registry.publish("viewport", viewport)
        registry.release_owner("rsi")
    """

    def __init__(self):
        self._subs: dict[str, list[Subscription]] = {}

    def subscribe(self, topic: str, handler: Callable, owner: Optional[str] = None) -> Subscription:
        sub = Subscription(self, topic, handler, owner)
        self._subs.setdefault(topic, []).append(sub)
        return sub

    def publish(self, topic: str, payload: Any) -> int:
        """Call every active handler of *topic* once. Returns handlers called."""
        handlers = [s.handler for s in self._subs.get(topic, ()) if s.active]
        for handler in handlers:
            handler(payload)
        return len(handlers)

    def release_owner(self, owner: str) -> int:
        """Release every subscription owned by *owner*."""
        owned = [s for subs in self._subs.values() for s in subs if s.owner == owner]
        for sub in owned:
            sub.release()
        return len(owned)

    def count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subs.get(topic, ()))
        return sum(len(subs) for subs in self._subs.values())

    def clear(self) -> None:
        for subs in list(self._subs.values()):
            for sub in list(subs):
                sub.release()

    def _discard(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.topic)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subs[sub.topic]


# ──────────────────────────────────────────────
# Panes
# ──────────────────────────────────────────────

@dataclass
class PaneHandle:
    """One registered pane. Returned by PaneSynchronizer.register_pane."""
    pane_id: str
    role: PaneRole
    surface: RenderSurface
    categories: frozenset
    hosts_price: bool
    state: PaneState = PaneState.UNMOUNTED
    overlay_keys: set[str] = field(default_factory=set)
    _synchronizer: Optional["PaneSynchronizer"] = field(default=None, repr=False)

    @property
    def is_ready(self) -> bool:
        return self.state == PaneState.READY

    def teardown(self) -> None:
        if self._synchronizer is not None:
            self._synchronizer.unregister_pane(self.pane_id)


class PaneSynchronizer:
    """Coordinates master/follower panes.

    Usage:
        sync = PaneSynchronizer()
        master = sync.register_pane(PaneRole.MASTER, FigureSurface("price"))
        rsi = sync.register_pane(PaneRole.FOLLOWER, FigureSurface("rsi"),
                                 categories={OverlayCategory.RSI})
        sync.apply_update(snapshot.classification, snapshot.bars,
                          snapshot.indicators, snapshot.patterns)
        sync.toggle_overlay(OverlayCategory.RSI, True)
        sync.on_master_range_changed(PaneViewport(from_=t0, to=t1))
    """

    def __init__(
        self,
        enabled: Optional[set[OverlayCategory]] = None,
        layout_debounce_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if layout_debounce_ms is None:
            layout_debounce_ms = get_settings().layout_debounce_ms
        self.layout_debounce_ms = layout_debounce_ms
        self.registry = SubscriptionRegistry()
        self.enabled: set[OverlayCategory] = set(enabled or ())

        self._panes: dict[str, PaneHandle] = {}
        self._master_id: Optional[str] = None
        self._bars: list[Bar] = []
        self._indicators: dict[str, IndicatorSeries] = {}
        self._patterns = PatternCollection()
        self._viewport: Optional[PaneViewport] = None
        self._user_interacted = False
        self._syncing = False
        self._clock = clock
        self._layout_due: Optional[float] = None

    # ── Registration ──

    @property
    def panes(self) -> dict[str, PaneHandle]:
        return dict(self._panes)

    @property
    def master(self) -> Optional[PaneHandle]:
        return self._panes.get(self._master_id) if self._master_id else None

    @property
    def viewport(self) -> Optional[PaneViewport]:
        return self._viewport

    @property
    def user_interacted(self) -> bool:
        return self._user_interacted

    def register_pane(
        self,
        role: PaneRole,
        surface: RenderSurface,
        pane_id: Optional[str] = None,
        categories: Optional[set[OverlayCategory]] = None,
    ) -> PaneHandle:
        """Register a pane. The pane is loaded immediately when data exists.

        Raises ValueError when a second master or a duplicate id is registered.
        """
        self.flush_layout()
        pane_id = pane_id or surface.surface_id
        if pane_id in self._panes:
            raise ValueError(f"Pane '{pane_id}' is already registered")
        if role == PaneRole.MASTER and self._master_id is not None:
            raise ValueError(f"Master pane already registered: '{self._master_id}'")

        if categories is None:
            categories = PRICE_CATEGORIES if role == PaneRole.MASTER else frozenset()
        pane = PaneHandle(
            pane_id=pane_id,
            role=role,
            surface=surface,
            categories=frozenset(categories),
            hosts_price=role == PaneRole.MASTER,
            state=PaneState.INITIALIZING,
            _synchronizer=self,
        )
        self._panes[pane_id] = pane
        if role == PaneRole.MASTER:
            self._master_id = pane_id

        log.info("pane.registered", pane_id=pane_id, role=role.value)
        if self._bars:
            self._load_pane(pane)
            if self._viewport is not None and pane.is_ready:
                self._set_range(pane, self._viewport)
        self.request_layout()
        return pane

    def unregister_pane(self, pane_id: str) -> None:
        """Tear a pane down: release its subscriptions and dispose its surface."""
        self.flush_layout()
        pane = self._panes.pop(pane_id, None)
        if pane is None:
            return
        if pane_id == self._master_id:
            self._master_id = None
        released = self.registry.release_owner(pane_id)
        if pane.state != PaneState.UNMOUNTED:
            with surface_guard(pane_id, "dispose"):
                pane.surface.dispose()
        pane.state = PaneState.UNMOUNTED
        pane.overlay_keys.clear()
        log.info("pane.unregistered", pane_id=pane_id, released=released)
        self.request_layout()

    def close(self) -> None:
        for pane_id in list(self._panes):
            self.unregister_pane(pane_id)
        self.registry.clear()
        self._layout_due = None

    # ── Subscriptions ──

    def on_viewport_change(self, handler: Callable[[PaneViewport], Any], owner: Optional[str] = None) -> Subscription:
        """Subscribe to master viewport broadcasts."""
        return self.registry.subscribe(TOPIC_VIEWPORT, handler, owner)

    def on_layout(self, handler: Callable[[list[str]], Any], owner: Optional[str] = None) -> Subscription:
        """Subscribe to (debounced) layout redraw notifications."""
        return self.registry.subscribe(TOPIC_LAYOUT, handler, owner)

    # ── Viewport ──

    def mark_user_interaction(self) -> None:
        """Record the first manual zoom/pan; full reloads keep the viewport after this."""
        if not self._user_interacted:
            self._user_interacted = True
            log.debug("pane.user_interacted")

    def reset_user_interaction(self) -> None:
        self._user_interacted = False

    def on_master_range_changed(self, viewport: PaneViewport) -> int:
        """Push the master's new visible range to every READY follower.

        Returns the number of followers updated; 0 when called re-entrantly
        during a broadcast.
        """
        self.flush_layout()
        return self._broadcast(viewport, origin=self._master_id)

    def notify_range_changed(self, pane_id: str, viewport: PaneViewport) -> int:
        """Range-change hook for any pane's surface.

        Inside a broadcast this is the echo of our own set_visible_range and
        is ignored. Outside one, the change is propagated to every other pane.
        """
        if self._syncing:
            return 0
        self.flush_layout()
        return self._broadcast(viewport, origin=pane_id)

    def _broadcast(self, viewport: PaneViewport, origin: Optional[str]) -> int:
        if self._syncing:
            return 0
        self._syncing = True
        try:
            self._viewport = viewport
            updated = 0
            for pane in list(self._panes.values()):
                if pane.pane_id == origin or not pane.is_ready:
                    continue
                if self._set_range(pane, viewport):
                    updated += 1
            self.registry.publish(TOPIC_VIEWPORT, viewport)
        finally:
            self._syncing = False
        log.debug("pane.viewport_synced", origin=origin, updated=updated,
                  start=viewport.from_, end=viewport.to)
        return updated

    # ── Updates ──

    def apply_update(
        self,
        classification,
        bars: list[Bar],
        indicators: Optional[dict[str, IndicatorSeries]] = None,
        patterns: Optional[PatternCollection] = None,
    ) -> None:
        """Apply a classified update to every pane."""
        self.flush_layout()
        self._bars = list(bars)
        self._indicators = dict(indicators or {})
        self._patterns = patterns or PatternCollection()

        if isinstance(classification, FullReload):
            self._full_reload()
        elif isinstance(classification, TickUpdate):
            if classification.changed:
                self._patch_last(classification.patched_last_bar)
        elif isinstance(classification, Append):
            self._patch_last(classification.new_bar)
        else:
            raise TypeError(f"Unknown update classification: {type(classification).__name__}")

    def _full_reload(self) -> None:
        for pane in list(self._panes.values()):
            if pane.state != PaneState.UNMOUNTED:
                self._load_pane(pane)

        if self._user_interacted and self._viewport is not None:
            target = self._viewport
        else:
            target = full_range(self._bars)
        if target is None:
            return

        master = self.master
        if master is not None and master.is_ready:
            self._set_range(master, target)
        self._broadcast(target, origin=self._master_id)

    def _patch_last(self, bar: Bar) -> None:
        if not self._bars:
            return
        index = len(self._bars) - 1
        for pane in list(self._panes.values()):
            if not pane.is_ready:
                continue
            if pane.hosts_price and not self._call(pane, "update", PRICE_SERIES, candle_point(bar)):
                continue
            specs = self._desired_series(pane)
            self._diff_overlays(pane, specs)
            for key, (kind, points) in specs.items():
                if key in self._indicators:
                    value = self._indicators[key][index]
                    if value is not None:
                        self._call(pane, "update", key, {"time": bar.timestamp, "value": value})
                else:
                    self._call(pane, "set_data", key, points)

    def _load_pane(self, pane: PaneHandle) -> None:
        pane.state = PaneState.INITIALIZING
        if pane.hosts_price:
            if not pane.surface.has_series(PRICE_SERIES):
                if not self._call(pane, "create_series", PRICE_SERIES, kind="candlestick"):
                    return
            if not self._call(pane, "set_data", PRICE_SERIES, candle_points(self._bars)):
                return

        specs = self._desired_series(pane)
        created = self._diff_overlays(pane, specs)
        for key, (kind, points) in specs.items():
            if key not in created:
                self._call(pane, "set_data", key, points)

        if pane.state == PaneState.INITIALIZING:
            pane.state = PaneState.READY
            log.debug("pane.ready", pane_id=pane.pane_id)

    # ── Overlays ──

    def toggle_overlay(self, category: OverlayCategory, enabled: bool) -> dict[str, list[str]]:
        """Enable or disable an overlay category on every pane hosting it.

        Returns the series keys created and removed.
        """
        self.flush_layout()
        if enabled:
            self.enabled.add(category)
        else:
            self.enabled.discard(category)

        created: list[str] = []
        removed: list[str] = []
        for pane in list(self._panes.values()):
            if not pane.is_ready or category not in pane.categories:
                continue
            before = set(pane.overlay_keys)
            self._diff_overlays(pane, self._desired_series(pane))
            created.extend(sorted(pane.overlay_keys - before))
            removed.extend(sorted(before - pane.overlay_keys))

        log.info("overlay.toggled", category=category.value, enabled=enabled,
                 created=len(created), removed=len(removed))
        if created or removed:
            self.request_layout()
        return {"created": created, "removed": removed}

    def _diff_overlays(self, pane: PaneHandle, specs: dict[str, tuple[str, list]]) -> set[str]:
        """Create missing and remove stale overlay series. Returns keys created."""
        desired = set(specs)
        for key in sorted(pane.overlay_keys - desired):
            if self._call(pane, "remove_series", key):
                pane.overlay_keys.discard(key)

        created = set()
        for key in sorted(desired - pane.overlay_keys):
            kind, points = specs[key]
            if self._call(pane, "create_series", key, kind=kind) and self._call(pane, "set_data", key, points):
                pane.overlay_keys.add(key)
                created.add(key)
        return created

    def _desired_series(self, pane: PaneHandle) -> dict[str, tuple[str, list]]:
        specs: dict[str, tuple[str, list]] = {}
        for category in sorted(self.enabled & pane.categories, key=lambda c: c.value):
            specs.update(overlay_series(category, self._bars, self._indicators, self._patterns))
        return specs

    # ── Layout ──

    @property
    def layout_pending(self) -> bool:
        return self._layout_due is not None

    def request_layout(self) -> None:
        """Schedule a layout notification; bursts within the debounce window coalesce.

        Nothing runs in the background. A pending notification is published by
        the first synchronizer call made after the window has passed, or by
        flush_layout(), so layout handlers always run on the caller's thread.
        """
        if self.layout_debounce_ms <= 0:
            self._publish_layout()
            return
        self._layout_due = self._clock() + self.layout_debounce_ms / 1000

    def flush_layout(self, force: bool = False) -> bool:
        """Publish the pending layout notification once its window has passed.

        Returns True when a notification was published.
        """
        if self._layout_due is None:
            return False
        if not force and self._clock() < self._layout_due:
            return False
        self._publish_layout()
        return True

    def _publish_layout(self) -> None:
        self._layout_due = None
        ready = [p.pane_id for p in list(self._panes.values()) if p.is_ready]
        self.registry.publish(TOPIC_LAYOUT, ready)

    # ── Surface Boundary ──

    def _set_range(self, pane: PaneHandle, viewport: PaneViewport) -> bool:
        return self._call(pane, "set_visible_range", viewport)

    def _call(self, pane: PaneHandle, operation: str, *args, **kwargs) -> bool:
        """Invoke a surface method inside the error boundary.

        A disposed surface moves the pane to UNMOUNTED and releases its
        subscriptions.
        """
        with surface_guard(pane.pane_id, operation) as outcome:
            getattr(pane.surface, operation)(*args, **kwargs)
        if isinstance(outcome.error, SurfaceDisposedError):
            pane.state = PaneState.UNMOUNTED
            pane.overlay_keys.clear()
            self.registry.release_owner(pane.pane_id)
        return outcome.ok


# ──────────────────────────────────────────────
# Overlay Series
# ──────────────────────────────────────────────

def overlay_series(
    category: OverlayCategory,
    bars: list[Bar],
    indicators: dict[str, IndicatorSeries],
    patterns: PatternCollection,
) -> dict[str, tuple[str, list]]:
    """Series keys, kinds and points an overlay category draws."""
    if category in (OverlayCategory.SMA, OverlayCategory.EMA):
        prefix = f"{category.value}_"
        keys = sorted((k for k in indicators if k.startswith(prefix)), key=lambda k: int(k[len(prefix):]))
        return {k: ("line", value_points(bars, indicators[k])) for k in keys}

    if category in _FIXED_INDICATOR_KEYS:
        return {
            k: ("histogram" if k in _HISTOGRAM_KEYS else "line", value_points(bars, indicators[k]))
            for k in _FIXED_INDICATOR_KEYS[category]
            if k in indicators
        }

    if not bars:
        return {}

    if category == OverlayCategory.SUPPORT_RESISTANCE:
        first, last = bars[0].timestamp, bars[-1].timestamp
        return {
            f"sr_{i}": ("line", [{"time": first, "value": lv.level}, {"time": last, "value": lv.level}])
            for i, lv in enumerate(patterns.support_resistance)
        }

    markers = _pattern_markers(category, bars, patterns)
    return {category.value: ("markers", markers)}


def _pattern_markers(category: OverlayCategory, bars: list[Bar], patterns: PatternCollection) -> list[dict]:
    def marker(index: int, text: str, direction: Direction, at_high: bool = False) -> dict:
        bar = bars[index]
        return {
            "time": bar.timestamp,
            "value": bar.high if at_high else bar.close,
            "text": text,
            "direction": direction.value,
        }

    points: list[dict] = []
    if category == OverlayCategory.DIVERGENCES:
        points = [marker(d.end_index, f"{d.direction.value} div", d.direction) for d in patterns.divergences]
    elif category == OverlayCategory.TRIANGLES:
        points = [marker(t.end_index, f"{t.triangle_type.value} triangle", Direction.NEUTRAL)
                  for t in patterns.triangles]
    elif category == OverlayCategory.FLAGS:
        points = [marker(f.flag_end_index, f"{f.direction.value} flag", f.direction) for f in patterns.flags]
    elif category == OverlayCategory.DOUBLE_TOPS:
        for p in patterns.double_tops + patterns.double_bottoms:
            name = "double top" if p.is_top else "double bottom"
            points.append(marker(p.first_index, name, p.direction))
            points.append(marker(p.second_index, name, p.direction))
    elif category == OverlayCategory.VOLUME_ANOMALIES:
        points = [marker(a.index, f"vol x{a.ratio:.1f}", Direction.NEUTRAL, at_high=True)
                  for a in patterns.volume_anomalies]
    elif category == OverlayCategory.CANDLESTICKS:
        points = [marker(c.index, c.name, c.direction, at_high=c.direction == Direction.BEARISH)
                  for c in patterns.candlesticks]

    return sorted(points, key=lambda p: p["time"])
