"""
Confidence weights for the tags of a preference model.

A tag's weight expresses how much its historical mean should be trusted:
it grows with the number of samples, shrinks with their spread, and is
scaled by a fixed, hand-tuned prior for the tag's class (see
``config.PREFIX_WEIGHTS``). Weights are recomputed for every scoring run and
never persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import COUNT_SMOOTHING, DEFAULT_PRIOR, PREFIX_WEIGHTS
from .profile import PreferenceModel, TagStatistic
from .tags import FeatureTag, TagClass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfidenceWeight:
    tag: str
    mean: float
    weight: float


def prior_for(tag: FeatureTag | str, priors: dict[str, float] | None = None) -> float:
    """
    Return the class prior of a tag.

    Staff tags prefer a role-specific entry ("Staff: Director") over the
    generic "Staff" one. Unknown classes get DEFAULT_PRIOR.
    """
    table = PREFIX_WEIGHTS if priors is None else priors
    if isinstance(tag, str):
        tag = FeatureTag.parse(tag)

    prefix = tag.tag_class.value if tag.tag_class else tag.prefix
    prior = table.get(prefix, DEFAULT_PRIOR)
    if tag.tag_class is TagClass.STAFF:
        prior = table.get(tag.prior_key, prior)
    return prior


def confidence_weight(sample_count: int, stdev: float, prior: float = DEFAULT_PRIOR) -> float:
    """
    Map (count, stdev, prior) to a weight in (0, 1].

    adjusted_spread = (stdev + 4.0 / count) / prior
    weight = 1 / (1 + adjusted_spread)
    """
    if sample_count < 1:
        raise ValueError(f"sample_count must be positive, got {sample_count}")
    if prior <= 0:
        raise ValueError(f"prior must be positive, got {prior}")

    adjusted_spread = (stdev + COUNT_SMOOTHING / sample_count) / prior
    return 1.0 / (1.0 + adjusted_spread)


def compute_weights(
    stats: dict[str, TagStatistic],
    priors: dict[str, float] | None = None,
) -> dict[str, ConfidenceWeight]:
    weights = {
        tag: ConfidenceWeight(
            tag=tag,
            mean=stat.mean,
            weight=confidence_weight(stat.sample_count, stat.stdev, prior_for(tag, priors)),
        )
        for tag, stat in stats.items()
    }
    logger.debug(f"Weighted {len(weights)} tags")
    return weights


def weight_model(
    model: PreferenceModel,
    priors: dict[str, float] | None = None,
) -> dict[str, ConfidenceWeight]:
    """
    Weight every tag of the model.

    The default-prior result comes from ``PreferenceModel.weights()``, which
    caches it until the model's stats change; a custom prior table always
    recomputes.
    """
    if priors is None:
        return model.weights()
    return compute_weights(model.stats, priors)
