"""
Target Selection

Weighted cumulative draw over a link's target URLs, plus UTM passthrough.
"""
import random
from typing import Mapping, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ...models.policy import WeightedTarget


def select_target(
    targets: Sequence[WeightedTarget],
    rng: random.Random,
    fallback: Optional[str] = None,
) -> Optional[str]:
    """
    Pick one target URL with probability weight / sum(weights).

    Draws r in [0, total) and walks the cumulative weights. Targets with a
    non-positive weight are never selected. Falls back to `fallback` when
    nothing is selectable.
    """
    usable = [t for t in targets if t.weight > 0]
    if not usable:
        return fallback
    total = sum(t.weight for t in usable)
    r = rng.random() * total
    cumulative = 0.0
    for target in usable:
        cumulative += target.weight
        if r < cumulative:
            return target.url
    # float rounding on the last bucket
    return usable[-1].url


def append_utm(url: str, utm: Mapping[str, str]) -> str:
    """Add UTM params to the URL. Params already present on the URL win."""
    if not utm:
        return url
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    existing = {name for name, _ in query}
    query.extend((name, value) for name, value in utm.items() if name not in existing)
    return urlunsplit(parts._replace(query=urlencode(query)))
