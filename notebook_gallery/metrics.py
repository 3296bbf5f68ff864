"""Folds click and execution logs into per-notebook summaries.

This module provides:
- MetricsAggregator: recompute/metrics/health status over the store
- HealthPolicy: the named, overridable healthy/unhealthy rule
- HealthStatus: result of a health check
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from .errors import BackendUnavailable, DataUnavailable
from .locks import KeyedLock
from .models import (
    COUNTED_ACTIONS,
    METRIC_ACCESSORS,
    Click,
    ClickAction,
    Notebook,
    Summary,
    utcnow,
)
from .store import NotebookStore

logger = logging.getLogger(__name__)

OnChange = Callable[[Notebook], Awaitable[None]]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HealthPolicy:
    """When a notebook counts as healthy.

    Attributes:
        min_score: Health must be strictly above this.
        max_failed_cells: Failed cells must be strictly below this.
        window_days: Only executions this recent count toward failed cells.
    """

    min_score: float = 0.75
    max_failed_cells: int = 2
    window_days: int = 30

    def classify(self, score: float | None, failed_cells: int) -> str:
        if score is None:
            return "unknown"
        if score > self.min_score and failed_cells < self.max_failed_cells:
            return "healthy"
        return "unhealthy"


@dataclass
class HealthStatus:
    status: str
    score: float | None
    failed_cells: int
    total_cells: int

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "score": self.score,
            "failed_cells": self.failed_cells,
            "total_cells": self.total_cells,
        }


def compute_health(successes: int, total: int) -> float | None:
    """Ratio of successful executions, or None when nothing ran."""
    if total <= 0:
        return None
    return successes / total


# ---------------------------------------------------------------------------
# MetricsAggregator
# ---------------------------------------------------------------------------


class MetricsAggregator:
    """Recomputes summaries from raw event logs.

    Recomputation for one notebook is serialized by a per-notebook lock
    held across read, compute and write; different notebooks proceed
    concurrently.
    """

    def __init__(
        self,
        store: NotebookStore,
        on_change: OnChange | None = None,
        policy: HealthPolicy | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        """Initialize the aggregator.

        Args:
            store: The relational store.
            on_change: Awaited after a changed summary is saved, to reindex
                the notebook's ranking fields.
            policy: Health classification policy.
            locks: Per-notebook locks, shareable with other writers.
        """
        self.store = store
        self.on_change = on_change
        self.policy = policy or HealthPolicy()
        self._locks = locks or KeyedLock()

    async def recompute(self, notebook: Notebook) -> tuple[Summary, bool]:
        """Rebuild the notebook's summary from its logs.

        Idempotent: with no new events the same Summary comes back and
        changed is False. A saved change stays flagged in the store until
        on_change succeeds, so a failed reindex is retried by the next call.

        Returns:
            Tuple of (summary now stored, whether it changed).

        Raises:
            DataUnavailable: If the logs can't be read. Nothing is written.
            BackendUnavailable: If the new summary can't be saved.
        """
        async with self._locks.hold(notebook.id):
            try:
                current = await self.store.get_or_create_summary(notebook.id)
                grouped = await self.store.click_counts(notebook.id, COUNTED_ACTIONS)
                successes, executions = await self.store.execution_counts(notebook.id)
                stars = await self.store.star_count(notebook.id)
            except sqlite3.Error as e:
                raise DataUnavailable(
                    f"Event log unavailable for notebook {notebook.uuid}: {e}"
                ) from e

            totals = {action: 0 for action in COUNTED_ACTIONS}
            actors = {action: 0 for action in COUNTED_ACTIONS}
            for _user_id, action, count in grouped:
                totals[action] += count
                actors[action] += 1

            summary = Summary(
                views=totals[ClickAction.VIEWED],
                unique_views=actors[ClickAction.VIEWED],
                downloads=totals[ClickAction.DOWNLOADED],
                unique_downloads=actors[ClickAction.DOWNLOADED],
                runs=totals[ClickAction.RAN],
                unique_runs=actors[ClickAction.RAN],
                stars=stars,
                health=compute_health(successes, executions),
            )

            changed = summary != current
            try:
                if changed:
                    await self.store.save_summary(notebook.id, summary)
                elif not await self.store.reindex_pending(notebook.id):
                    return current, False
            except sqlite3.Error as e:
                raise BackendUnavailable("store", str(e)) from e

            if changed:
                logger.info(f"Summary changed for notebook {notebook.uuid}")
            else:
                logger.info(f"Retrying reindex for notebook {notebook.uuid}")
            if self.on_change is not None:
                await self.on_change(notebook)
            try:
                await self.store.clear_reindex_pending(notebook.id)
            except sqlite3.Error as e:
                raise BackendUnavailable("store", str(e)) from e

        return summary, changed

    async def recompute_all(self) -> dict[str, int]:
        """Recompute every notebook's summary.

        Returns:
            Counts of "changed", "unchanged" and "failed" notebooks.
        """
        counts = {"changed": 0, "unchanged": 0, "failed": 0}
        notebooks = await self.store.get_notebooks(await self.store.all_notebook_ids())
        for notebook in notebooks.values():
            try:
                _, changed = await self.recompute(notebook)
            except (DataUnavailable, BackendUnavailable) as e:
                logger.warning(f"Skipping notebook {notebook.uuid}: {e}")
                counts["failed"] += 1
                continue
            counts["changed" if changed else "unchanged"] += 1
        return counts

    # ================================================================
    # Read-side views
    # ================================================================

    async def metrics(self, notebook: Notebook) -> dict[str, int | float | None]:
        """Summary fields as a name -> value map."""
        summary = await self._summary(notebook)
        return {name: accessor(summary) for name, accessor in METRIC_ACCESSORS.items()}

    async def health_status(self, notebook: Notebook) -> HealthStatus:
        summary = await self._summary(notebook)
        since = utcnow() - timedelta(days=self.policy.window_days)
        try:
            failed = await self.store.failed_cells(notebook.id, since)
            total = len(await self.store.code_cells(notebook.id))
        except sqlite3.Error as e:
            raise DataUnavailable(f"Execution log unavailable: {e}") from e
        return HealthStatus(
            status=self.policy.classify(summary.health, failed),
            score=summary.health,
            failed_cells=failed,
            total_cells=total,
        )

    async def unique_viewers(self, notebook: Notebook) -> dict[int | None, int]:
        return (await self._viewer_counts(notebook))[ClickAction.VIEWED]

    async def unique_downloaders(self, notebook: Notebook) -> dict[int | None, int]:
        return (await self._viewer_counts(notebook))[ClickAction.DOWNLOADED]

    async def unique_runners(self, notebook: Notebook) -> dict[int | None, int]:
        return (await self._viewer_counts(notebook))[ClickAction.RAN]

    async def edit_history(self, notebook: Notebook) -> list[Click]:
        try:
            return await self.store.edit_history(notebook.id)
        except sqlite3.Error as e:
            raise DataUnavailable(f"Click log unavailable: {e}") from e

    async def _viewer_counts(
        self, notebook: Notebook
    ) -> dict[ClickAction, dict[int | None, int]]:
        try:
            return await self.store.viewer_counts(notebook.id)
        except sqlite3.Error as e:
            raise DataUnavailable(f"Click log unavailable: {e}") from e

    async def _summary(self, notebook: Notebook) -> Summary:
        try:
            return await self.store.get_or_create_summary(notebook.id)
        except sqlite3.Error as e:
            raise BackendUnavailable("store", str(e)) from e
