"""Optimistic merge of new variants into a content item manifest."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from portable_content.pipeline.errors import (
    InputContractError,
    ManifestNotFound,
    ManifestVersionConflict,
    ReconciliationConflict,
)
from portable_content.pipeline.manifest import Variant
from portable_content.storage.common import to_iso, utc_now
from portable_content.storage.gateway import StorageGateway

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 0.05
DEFAULT_MAX_DELAY_SECONDS = 1.0


@dataclass(slots=True)
class ReconcileResult:
    """Outcome of one reconcile call."""

    added: int
    attempts: int
    written: bool
    version: str | None = None


def merge_variants(
    existing: Iterable[Variant],
    incoming: Iterable[Variant],
) -> tuple[list[Variant], int]:
    """Append incoming variants whose ``uri`` is not already present."""

    merged = list(existing)
    seen = {variant.uri for variant in merged if variant.uri is not None}
    added = 0
    for variant in incoming:
        if variant.uri is not None and variant.uri in seen:
            continue
        merged.append(variant)
        if variant.uri is not None:
            seen.add(variant.uri)
        added += 1
    return merged, added


class ManifestReconciler:
    """Read-modify-write loop over the gateway's conditional manifest write."""

    def __init__(
        self,
        gateway: StorageGateway,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep

    def reconcile(
        self,
        content_id: str,
        block_id: str,
        new_variants: list[Variant],
    ) -> ReconcileResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                item, version = self.gateway.read_manifest(content_id)
            except ManifestNotFound as error:
                raise InputContractError(str(error)) from error
            block = item.find_block(block_id)
            if block is None:
                raise InputContractError(
                    f"Block {block_id} not found in content item {content_id}",
                )

            merged, added = merge_variants(block.variants, new_variants)
            if added == 0:
                return ReconcileResult(added=0, attempts=attempt, written=False, version=version)

            block.variants = merged
            item.updated_at = to_iso(utc_now())
            try:
                new_version = self.gateway.write_manifest(item, expected_version=version)
            except ManifestVersionConflict:
                logger.debug(
                    "Manifest %s changed during reconcile (attempt %d/%d)",
                    content_id,
                    attempt,
                    self.max_attempts,
                )
                if attempt < self.max_attempts:
                    self._sleep(self._backoff(attempt))
                continue
            return ReconcileResult(
                added=added,
                attempts=attempt,
                written=True,
                version=new_version,
            )

        raise ReconciliationConflict(
            f"Manifest {content_id} kept changing; gave up after {self.max_attempts} attempts.",
        )

    def _backoff(self, attempt: int) -> float:
        ceiling = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        return random.uniform(0.0, ceiling)  # noqa: S311
