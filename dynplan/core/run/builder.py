from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

import structlog

from dynplan.core.errors import SubunitBuildFailure
from dynplan.core.model import SubunitSpec


slog = structlog.get_logger(__name__)

BuildFn = Callable[[SubunitSpec], Any]


@dataclass(frozen=True)
class BuildOutcome:
    index: int
    identity: str
    ok: bool
    value: Any = None
    failure: Optional[SubunitBuildFailure] = None


def build_subunits(
    node: str,
    specs: Sequence[SubunitSpec],
    build: BuildFn,
    *,
    workers: int,
    blocked: Optional[Mapping[str, list[str]]] = None,
) -> list[BuildOutcome]:
    """Build sub-units on a thread pool and return outcomes in index order.

    Sub-units are independent: one failing never stops its siblings, and a
    failure is only recorded, never retried here. ``blocked`` maps identities to
    the upstream identities they are missing; those are failed without running.
    """

    blocked = blocked or {}
    outcomes: dict[int, BuildOutcome] = {}

    runnable: list[SubunitSpec] = []
    for spec in specs:
        missing = blocked.get(spec.identity)
        if missing:
            outcomes[spec.index] = _failed(
                node,
                spec,
                code="E_UPSTREAM_FAILED",
                message=f"upstream sub-units without a valid result: {', '.join(missing)}",
            )
        else:
            runnable.append(spec)

    if runnable:
        with ThreadPoolExecutor(max_workers=max(1, min(workers, len(runnable)))) as ex:
            futures = {ex.submit(build, spec): spec for spec in runnable}
            for f in as_completed(futures):
                spec = futures[f]
                try:
                    value = f.result()
                except Exception as e:
                    outcomes[spec.index] = _failed(
                        node, spec, code="E_SUBUNIT_BUILD_FAILED", message=f"{type(e).__name__}: {e}"
                    )
                    continue
                outcomes[spec.index] = BuildOutcome(index=spec.index, identity=spec.identity, ok=True, value=value)

    return [outcomes[i] for i in sorted(outcomes)]


def _failed(node: str, spec: SubunitSpec, *, code: str, message: str) -> BuildOutcome:
    failure = SubunitBuildFailure(
        code=code,
        message=message,
        path=f"{node}[{spec.index}]",
        identity=spec.identity,
    )
    slog.warning(
        "subunit_build_failed",
        node=node,
        index=spec.index,
        identity=spec.identity,
        code=code,
        error=message,
    )
    return BuildOutcome(index=spec.index, identity=spec.identity, ok=False, failure=failure)
