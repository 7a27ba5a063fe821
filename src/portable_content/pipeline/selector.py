"""Variant selection from client capabilities.

Scoring is a pure function of the variant list and the request capabilities:
media-type weight first, then independent penalty terms for size closeness,
network cost, density bucket and byte ceiling. The selector never raises; an
empty variant list is the only case that yields ``None``.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from portable_content.pipeline.manifest import Variant
from portable_content.pipeline.naming import parse_media_type
from portable_content.storage.common import from_iso

SIZE_WEIGHT = 0.3
NETWORK_WEIGHT = 0.4
DENSITY_WEIGHT = 0.2
MAX_BYTES_PENALTY = 10.0
HIGH_DENSITY_THRESHOLD = 2.0
HIGH_DPI_THRESHOLD = 144
OVERSIZE_RATIO = 1.5
SCORE_PRECISION = 9


class NetworkClass(str, Enum):
    """Client network quality hint."""

    FAST = "FAST"
    CELLULAR = "CELLULAR"
    SLOW = "SLOW"


NETWORK_FACTORS: dict[NetworkClass, float] = {
    NetworkClass.FAST: 0.0,
    NetworkClass.CELLULAR: 0.5,
    NetworkClass.SLOW: 1.0,
}


@dataclass(frozen=True, slots=True)
class AcceptPattern:
    """One parsed accept entry."""

    media_range: str
    weight: float = 1.0
    position: int = 0

    @property
    def specificity(self) -> int:
        if self.media_range == "*/*":
            return 0
        if self.media_range.endswith("/*"):
            return 1
        return 2

    def matches(self, base_type: str) -> bool:
        if self.media_range == "*/*":
            return True
        if self.media_range.endswith("/*"):
            return base_type.startswith(self.media_range[:-1])
        return base_type == self.media_range


@dataclass(frozen=True, slots=True)
class Hints:
    """Optional device and network hints."""

    width: int | None = None
    height: int | None = None
    density: float | None = None
    network: NetworkClass | None = None
    max_bytes: int | None = None


@dataclass(frozen=True, slots=True)
class Capabilities:
    """Per-request client capabilities; never persisted."""

    accept: tuple[AcceptPattern, ...]
    hints: Hints = field(default_factory=Hints)

    @classmethod
    def create(cls, accept: Iterable[str], hints: Hints | None = None) -> Capabilities:
        return cls(accept=tuple(parse_accept(accept)), hints=hints or Hints())

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Capabilities:
        """Build from ``{accept: [...], hints?: {...}}``."""

        accept = raw.get("accept", [])
        if isinstance(accept, str):
            accept = accept.split(",")
        if not isinstance(accept, list):
            raise TypeError("capabilities.accept must be an array of strings")
        raw_hints = raw.get("hints") or {}
        if not isinstance(raw_hints, dict):
            raise TypeError("capabilities.hints must be an object")
        network = raw_hints.get("network")
        return cls.create(
            [str(item) for item in accept],
            Hints(
                width=_optional_int(raw_hints.get("width")),
                height=_optional_int(raw_hints.get("height")),
                density=_optional_float(raw_hints.get("density")),
                network=NetworkClass(str(network).upper()) if network else None,
                max_bytes=_optional_int(raw_hints.get("maxBytes")),
            ),
        )


@dataclass(slots=True)
class ScoredVariant:
    """Variant with its score breakdown, for diagnostics."""

    variant: Variant
    position: int
    score: float
    media_weight: float
    terms: dict[str, float] = field(default_factory=dict)


def parse_accept(values: Iterable[str]) -> list[AcceptPattern]:
    """Parse ``type/subtype;q=0.8`` entries, keeping list order."""

    patterns: list[AcceptPattern] = []
    for value in values:
        if not value or not value.strip():
            continue
        base, params = parse_media_type(value)
        weight = 1.0
        if "q" in params:
            try:
                weight = float(params["q"])
            except ValueError:
                weight = 1.0
            if math.isnan(weight):
                weight = 1.0
            weight = min(1.0, max(0.0, weight))
        patterns.append(AcceptPattern(media_range=base, weight=weight, position=len(patterns)))
    return patterns


def media_weight(variant: Variant, accept: Sequence[AcceptPattern]) -> float:
    """Weight of the most specific accept pattern matching the variant."""

    base, _ = parse_media_type(variant.media_type)
    best: AcceptPattern | None = None
    for pattern in accept:
        if not pattern.matches(base):
            continue
        if best is None or pattern.specificity > best.specificity:
            best = pattern
    return best.weight if best is not None else 0.0


def rank_variants(variants: Sequence[Variant], capabilities: Capabilities) -> list[ScoredVariant]:
    """Score accepted variants and order them best first."""

    candidates: list[ScoredVariant] = []
    for position, variant in enumerate(variants):
        weight = media_weight(variant, capabilities.accept)
        if weight <= 0.0:
            continue
        candidates.append(
            ScoredVariant(variant=variant, position=position, score=weight, media_weight=weight),
        )
    if not candidates:
        return []

    hints = capabilities.hints
    largest = max(
        (item.variant.byte_size for item in candidates if item.variant.byte_size is not None),
        default=None,
    )
    for item in candidates:
        terms = _hint_terms(item.variant, hints, largest_bytes=largest)
        item.terms = terms
        item.score = item.media_weight - sum(terms.values())

    return sorted(candidates, key=_rank_key)


def select_variant(variants: Sequence[Variant], capabilities: Capabilities) -> Variant | None:
    """Best variant for the client, a fallback variant, or ``None`` when empty."""

    if not variants:
        return None
    ranked = rank_variants(variants, capabilities)
    if ranked:
        return ranked[0].variant
    return fallback_variant(variants)


def fallback_variant(variants: Sequence[Variant]) -> Variant | None:
    """Smallest variant with a storage location, else the first variant."""

    if not variants:
        return None
    located = [(position, variant) for position, variant in enumerate(variants) if variant.uri]
    if not located:
        return variants[0]
    _, chosen = min(
        located,
        key=lambda entry: (_bytes_key(entry[1]), entry[0]),
    )
    return chosen


def _hint_terms(
    variant: Variant,
    hints: Hints,
    *,
    largest_bytes: int | None,
) -> dict[str, float]:
    terms: dict[str, float] = {}
    width, height, density_param = _variant_geometry(variant)

    if hints.width and width is not None:
        terms["size"] = SIZE_WEIGHT * min(1.0, abs(width - hints.width) / hints.width)
    elif not hints.width and hints.height and height is not None:
        terms["size"] = SIZE_WEIGHT * min(1.0, abs(height - hints.height) / hints.height)

    factor = NETWORK_FACTORS.get(hints.network, 0.0) if hints.network is not None else 0.0
    if factor > 0.0:
        if variant.byte_size is None or not largest_bytes:
            ratio = 1.0
        else:
            ratio = variant.byte_size / largest_bytes
        terms["network"] = NETWORK_WEIGHT * factor * ratio

    if hints.density is not None:
        variant_high = _variant_is_high_density(width, density_param, hints)
        if variant_high is not None:
            client_high = hints.density >= HIGH_DENSITY_THRESHOLD
            if client_high != variant_high:
                terms["density"] = DENSITY_WEIGHT

    if (
        hints.max_bytes is not None
        and variant.byte_size is not None
        and variant.byte_size > hints.max_bytes
    ):
        terms["max_bytes"] = MAX_BYTES_PENALTY
    return terms


def _variant_geometry(variant: Variant) -> tuple[int | None, int | None, dict[str, str]]:
    _, params = parse_media_type(variant.media_type)
    width = variant.width if variant.width is not None else _optional_int(params.get("width"))
    height = variant.height if variant.height is not None else _optional_int(params.get("height"))
    return width, height, params


def _variant_is_high_density(
    width: int | None,
    params: dict[str, str],
    hints: Hints,
) -> bool | None:
    dpi = _optional_float(params.get("dpi"))
    if dpi is not None:
        return dpi >= HIGH_DPI_THRESHOLD
    for name in ("density", "x"):
        density = _optional_float(params.get(name))
        if density is not None:
            return density >= HIGH_DENSITY_THRESHOLD
    if width is not None and hints.width:
        return width >= hints.width * OVERSIZE_RATIO
    return None


def _rank_key(item: ScoredVariant) -> tuple[float, float, int, float, int]:
    created = _created_at(item.variant)
    return (
        -round(item.score, SCORE_PRECISION),
        _bytes_key(item.variant),
        0 if created is not None else 1,
        created.timestamp() if created is not None else 0.0,
        item.position,
    )


def _bytes_key(variant: Variant) -> float:
    return float(variant.byte_size) if variant.byte_size is not None else math.inf


def _created_at(variant: Variant) -> datetime | None:
    if not variant.created_at:
        return None
    try:
        return from_iso(variant.created_at)
    except ValueError:
        return None


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    # JSON clients send 800.0 as readily as 800.
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(parsed) or parsed < 1:
        return None
    return int(parsed)


def _optional_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip().lower().removesuffix("x")
    try:
        parsed = float(text)
    except ValueError:
        return None
    if math.isnan(parsed) or parsed <= 0:
        return None
    return parsed
