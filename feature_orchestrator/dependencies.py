"""Feature-level dependency ordering and readiness for the auto-loop."""

from __future__ import annotations

import logging

from .models import Feature, FeatureStatus

logger = logging.getLogger("orchestrator")

_DONE_STATUSES = {FeatureStatus.COMPLETED.value, FeatureStatus.VERIFIED.value}


def resolve_dependencies(features: list[Feature]) -> list[Feature]:
    """Stable topological order: a feature comes after the in-set features it depends on.

    Features caught in a cycle keep their input order and are appended last.
    """
    by_id = {f.id: f for f in features}
    remaining = {f.id: {d for d in f.dependencies if d in by_id and d != f.id} for f in features}
    ordered: list[Feature] = []
    placed: set[str] = set()

    progress = True
    while progress:
        progress = False
        for feature in features:
            if feature.id in placed:
                continue
            if remaining[feature.id] <= placed:
                ordered.append(feature)
                placed.add(feature.id)
                progress = True

    cyclic = [f for f in features if f.id not in placed]
    if cyclic:
        logger.warning(f"Dependency cycle among features: {', '.join(f.id for f in cyclic)}")
    return ordered + cyclic


def are_dependencies_satisfied(
    feature: Feature,
    all_features: list[Feature],
    skip_verification: bool = False,
) -> bool:
    """True when every known dependency has finished.

    Finished means completed or verified; with ``skip_verification`` a dependency
    waiting for manual review also counts. Unknown dependency ids are ignored.
    """
    if not feature.dependencies:
        return True

    done = set(_DONE_STATUSES)
    if skip_verification:
        done.add(FeatureStatus.WAITING_APPROVAL.value)

    by_id = {f.id: f for f in all_features}
    for dep_id in feature.dependencies:
        dep = by_id.get(dep_id)
        if dep is None:
            logger.debug(f"Feature {feature.id} depends on unknown feature {dep_id}; ignoring")
            continue
        if dep.status not in done:
            return False
    return True
