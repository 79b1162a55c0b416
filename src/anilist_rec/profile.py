import logging
from collections import defaultdict
from dataclasses import dataclass, field
from statistics import mean, pstdev
from typing import Any, Callable, Iterable

from .tags import CatalogRecord, MainStudioPolicy, expand_tags

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int | None], None]


@dataclass(frozen=True)
class TagStatistic:
    """Unweighted rating statistics of all samples sharing one tag."""
    tag: str
    sample_count: int
    mean: float
    stdev: float

    def as_row(self) -> tuple[str, int, float, float]:
        return (self.tag, self.sample_count, self.mean, self.stdev)


@dataclass
class PreferenceModel:
    """Per-tag statistics of a viewer's rated history plus the ids they have seen."""
    stats: dict[str, TagStatistic] = field(default_factory=dict)
    seen: set[int] = field(default_factory=set)

    # Default-prior weights and the stats snapshot they were computed from; never persisted
    _weights: dict | None = field(default=None, init=False, repr=False, compare=False)
    _weights_source: tuple | None = field(default=None, init=False, repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.stats)

    def weights(self) -> dict[str, Any]:
        """
        Confidence weights of every tag under the default priors.

        Computed on first use and reused until ``stats`` changes.
        """
        # Local import: feature_weights depends on this module
        from .feature_weights import compute_weights

        source = tuple(self.stats.items())
        if self._weights is None or self._weights_source != source:
            self._weights = compute_weights(self.stats)
            self._weights_source = source
        return self._weights


def collect_samples(
    history: Iterable[tuple[CatalogRecord, float]],
    seen: set[int] | None = None,
    progress: ProgressCallback | None = None,
    total: int | None = None,
) -> dict[str, list[float]]:
    """
    Expand rated records into per-tag score samples.

    Main studios are emitted twice (plain and "(main)"), so they contribute
    two equal samples per title.
    """
    samples: dict[str, list[float]] = defaultdict(list)

    for done, (record, score) in enumerate(history, 1):
        if seen is not None:
            seen.add(record.id)
        for tag in expand_tags(record, MainStudioPolicy.DUPLICATE):
            samples[tag.key].append(float(score))
        if progress:
            progress(done, total)

    return samples


def build_model(
    history: Iterable[tuple[CatalogRecord, float]],
    progress: ProgressCallback | None = None,
    total: int | None = None,
) -> PreferenceModel:
    """
    Build the preference model from ordered (record, score) pairs.

    Args:
        history: Rated titles, in watch-list order
        progress: Optional callback invoked as progress(done, total) per title
        total: Number of titles, when known up front

    An empty history gives an empty model.
    """
    model = PreferenceModel()
    samples = collect_samples(history, seen=model.seen, progress=progress, total=total)

    for tag, scores in samples.items():
        model.stats[tag] = TagStatistic(
            tag=tag,
            sample_count=len(scores),
            mean=mean(scores),
            stdev=pstdev(scores),
        )

    logger.debug(f"Built model with {len(model.stats)} tags from {len(model.seen)} titles")
    return model


def list_model(model: PreferenceModel) -> list[tuple[str, int, float, float]]:
    """(tag, count, mean, stdev) rows, highest mean first."""
    rows = [stat.as_row() for stat in model.stats.values()]
    return sorted(rows, key=lambda row: -row[2])
