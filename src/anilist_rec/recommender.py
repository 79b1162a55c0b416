import logging
import math
from dataclasses import dataclass
from typing import Iterable, Iterator

from .feature_weights import ConfidenceWeight, weight_model
from .profile import PreferenceModel, ProgressCallback
from .tags import CatalogRecord, MainStudioPolicy, expand_tags

logger = logging.getLogger(__name__)


@dataclass
class ScoredCandidate:
    id: int
    title: str
    avg_score: float | None
    episodes: int | None
    calc_score: float
    total_weight: float
    explanation: str | None = None

    @property
    def weight_class(self) -> int:
        return math.floor(self.total_weight)


def score_tags(
    record: CatalogRecord,
    weights: dict[str, ConfidenceWeight],
    policy: MainStudioPolicy = MainStudioPolicy.EXTRA_TAG,
) -> tuple[float, float, str | None]:
    """
    Combine the weighted means of a record's known tags.

    Returns (calc_score, total_weight, explanation). A record sharing no tag
    with the model scores -inf with zero weight and no explanation.

    Main studios are scored through their "(main)" tag only; the model
    already counts them twice.
    """
    matched = [weights[tag.key] for tag in expand_tags(record, policy) if tag.key in weights]
    if not matched:
        return -math.inf, 0.0, None

    total_weight = sum(cw.weight for cw in matched)
    calc_score = sum(cw.mean * cw.weight for cw in matched) / total_weight

    explanation = ", ".join(
        f"{cw.tag} ({cw.mean:.2f} * {cw.weight:.2f})"
        for cw in sorted(matched, key=lambda cw: -cw.weight)
    )
    return calc_score, total_weight, explanation


def score_candidate(
    record: CatalogRecord,
    weights: dict[str, ConfidenceWeight],
    policy: MainStudioPolicy = MainStudioPolicy.EXTRA_TAG,
) -> ScoredCandidate:
    calc_score, total_weight, explanation = score_tags(record, weights, policy)
    return ScoredCandidate(
        id=record.id,
        title=record.display_title,
        avg_score=record.average_score,
        episodes=record.total_episodes,
        calc_score=calc_score,
        total_weight=total_weight,
        explanation=explanation,
    )


def recommend(
    model: PreferenceModel,
    candidates: Iterable[CatalogRecord],
    policy: MainStudioPolicy = MainStudioPolicy.EXTRA_TAG,
    progress: ProgressCallback | None = None,
    total: int | None = None,
) -> list[ScoredCandidate]:
    """
    Score hydrated candidates against the model.

    Results are sorted by descending calc_score; ties keep input order and
    unmatched candidates (-inf) come last.
    """
    weights = weight_model(model)

    scored = []
    for done, record in enumerate(candidates, 1):
        scored.append(score_candidate(record, weights, policy))
        if progress:
            progress(done, total)

    unmatched = sum(1 for c in scored if c.total_weight == 0)
    if unmatched:
        logger.debug(f"{unmatched}/{len(scored)} candidates share no tag with the model")

    return sorted(scored, key=lambda c: -c.calc_score)


def bucket_by_weight(scored: list[ScoredCandidate]) -> list[list[ScoredCandidate]]:
    """
    Split scored candidates into weight classes.

    Class k holds every candidate with k <= total_weight < k + 1, in input
    order. Classes without candidates below the highest populated one are
    kept as empty lists so the list index is the class number.
    """
    classes: list[list[ScoredCandidate]] = []
    remaining = list(scored)

    while remaining:
        limit = len(classes) + 1
        classes.append([c for c in remaining if c.total_weight < limit])
        remaining = [c for c in remaining if not c.total_weight < limit]

    return classes


def format_candidate(candidate: ScoredCandidate) -> list[str]:
    avg = f"{candidate.avg_score:.2f}" if candidate.avg_score is not None else "n/a"
    eps = candidate.episodes if candidate.episodes is not None else "?"
    return [
        f"- C {candidate.calc_score:.2f} (w {candidate.total_weight:.1f}), A {avg}: "
        f"{candidate.title} ({candidate.id}, {eps} episodes)",
        f"  {candidate.explanation or ''}",
    ]


def format_report(classes: list[list[ScoredCandidate]]) -> Iterator[str]:
    """Report lines, highest weight class first."""
    for index in reversed(range(len(classes))):
        yield ""
        yield f"=== weight class {index}+ ==="
        yield ""
        for candidate in classes[index]:
            yield from format_candidate(candidate)
