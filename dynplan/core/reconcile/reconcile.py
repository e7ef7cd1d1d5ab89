from __future__ import annotations

from typing import AbstractSet, Optional

import structlog

from dynplan.core.model import ExpansionPlan, ReconciliationResult


slog = structlog.get_logger(__name__)


def reconcile(
    previous: Optional[ExpansionPlan],
    plan: ExpansionPlan,
    cap: Optional[int],
    valid: AbstractSet[str],
    *,
    upstream_capped: bool = False,
) -> ReconciliationResult:
    """Diff a freshly expanded plan against the last recorded one.

    ``valid`` holds the identities with a valid cached result (the caller's
    store slice for this node). A sub-unit is reused when its identity was part
    of the previous plan (or held by it) and is still valid; otherwise it has to
    be built.

    The cap only moves indices in and out of ``retained_unbuilt``. It never
    touches cached results, so lowering it and raising it again brings the same
    sub-units back as reused.

    Identities of the previous plan that no longer appear are reported as
    dropped; they are neither retried nor failures. When ``upstream_capped`` is
    set the plan was expanded over a capped dynamic upstream, so a missing
    identity may only be hidden by the cap: it is held instead of dropped.
    """

    if cap is not None and cap < 0:
        raise ValueError(f"cap must be non-negative, got {cap}")

    earlier: list[str] = []
    if previous is not None:
        earlier = list(dict.fromkeys(previous.identities + list(previous.held)))
    known = {i for i in earlier if i in valid}

    reused: list[int] = []
    to_build: list[int] = []
    retained: list[int] = []

    for spec in plan.subunits:
        if cap is not None and spec.index >= cap:
            retained.append(spec.index)
        elif spec.identity in known:
            reused.append(spec.index)
        else:
            to_build.append(spec.index)

    current = set(plan.identities)
    missing = [i for i in earlier if i not in current]
    dropped: list[str] = []
    held: list[str] = []
    if upstream_capped:
        held = [i for i in missing if i in valid]
    else:
        dropped = missing

    result = ReconciliationResult(
        node=plan.node,
        reused=reused,
        to_build=to_build,
        retained_unbuilt=retained,
        dropped=dropped,
        held=held,
    )
    slog.debug("reconciled", node=plan.node, cap=cap, held=len(held), **result.counts())
    return result
