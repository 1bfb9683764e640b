"""Resolution negotiation — pick the best achievable mode for a request.

Fixed tie-break order:

1. Override (first declared match replaces the target).
2. Exact membership in the capability set.
3. Refresh-only degradation down the ladder, holding resolution fixed.

INVARIANT: Resolution is never changed silently; only refresh rate degrades.
INVARIANT: ``negotiate`` is pure — no I/O, no mutation of its inputs.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable

from vdctl.domain.errors import NoAchievableModeError
from vdctl.domain.modes import (
    AchievedMode,
    Mode,
    ModeOverride,
    ModeRequest,
    NegotiationReason,
    OverrideTable,
)

REFRESH_LADDER: tuple[int, ...] = (90, 60, 30)


def refresh_candidates(target_refresh: int) -> list[int]:
    """Ladder entries strictly below *target_refresh*, highest first.

    Examples:
        >>> refresh_candidates(120)
        [90, 60, 30]
        >>> refresh_candidates(60)
        [30]
    """
    return sorted((hz for hz in REFRESH_LADDER if hz < target_refresh), reverse=True)


def negotiate(
    request: ModeRequest,
    capabilities: Collection[Mode],
    overrides: OverrideTable | Iterable[ModeOverride] = (),
) -> AchievedMode:
    """Map *request* to an achievable mode.

    Raises:
        NoAchievableModeError: Neither the (overridden) target nor any
            ladder refresh at the same resolution is in *capabilities*.
    """
    table = overrides if isinstance(overrides, OverrideTable) else OverrideTable(overrides)
    requested = request.mode
    target = requested
    reason = NegotiationReason.EXACT_MATCH

    override = table.lookup(requested)
    if override is not None:
        target = override.to_mode
        reason = NegotiationReason.OVERRIDE_APPLIED

    if target in capabilities:
        return AchievedMode(mode=target, requested=requested, reason=reason)

    for hz in refresh_candidates(target.refresh_hz):
        candidate = Mode(width=target.width, height=target.height, refresh_hz=hz)
        if candidate in capabilities:
            return AchievedMode(
                mode=candidate,
                requested=requested,
                reason=NegotiationReason.REFRESH_DEGRADED,
                degraded=True,
            )

    msg = f"No achievable mode for {target} (requested {requested})"
    raise NoAchievableModeError(
        msg,
        requested=str(requested),
        target=str(target),
        capabilities=sorted(str(m) for m in capabilities),
    )
