"""Saved chart configurations.

A visualization references columns *by name*, never by ordinal, so it
survives re-syncs that reorder or retype columns.  After schema drift a
saved chart may reference columns that no longer exist; such charts are
kept and reported as stale rather than silently rewritten.
"""

from __future__ import annotations

import uuid

from dataport.errors import DatasetNotFoundError, ValidationError
from dataport.models import AggregationResult, ChartConfig, Visualization
from dataport.registry import DatasetRegistry

CHART_TYPES = ("bar", "line", "pie", "area", "scatter", "table")


class VisualizationStore:
    """Persists visualizations inside their dataset's directory."""

    def __init__(self, registry: DatasetRegistry) -> None:
        self.registry = registry
        self.store = registry.store

    def _dir(self, dataset_id: str):
        return self.store.dataset_dir(dataset_id) / "visualizations"

    def save_visualization(
        self,
        dataset_id: str,
        chart_type: str,
        config: ChartConfig,
    ) -> Visualization:
        """Validate *config* against the current schema and persist it.

        Raises:
            DatasetNotFoundError: Unknown dataset.
            ValidationError: Unknown chart type or column.
        """
        if chart_type not in CHART_TYPES:
            raise ValidationError(
                f"Unknown chart type {chart_type!r}. Available: {list(CHART_TYPES)}"
            )
        schema = self.registry.get_schema(dataset_id)
        missing = [c for c in config.referenced_columns() if schema.column(c) is None]
        if missing:
            raise ValidationError(
                f"Unknown column(s) {missing}. Available: {schema.names}"
            )
        viz = Visualization(
            id=uuid.uuid4().hex,
            dataset_id=dataset_id,
            chart_type=chart_type,
            config=config,
            created_at=self.registry.clock(),
        )
        self.store.write_json(
            dataset_id, f"visualizations/{viz.id}.json", viz.model_dump(mode="json")
        )
        return viz

    def list_visualizations(self, dataset_id: str) -> list[Visualization]:
        """All visualizations of a dataset, oldest first."""
        self.registry.get_dataset(dataset_id)
        vdir = self._dir(dataset_id)
        if not vdir.exists():
            return []
        result = []
        for path in sorted(vdir.glob("*.json")):
            try:
                result.append(Visualization.model_validate_json(path.read_text()))
            except FileNotFoundError:
                # Dataset deleted while listing
                continue
        result.sort(key=lambda v: (v.created_at, v.id))
        return result

    def get_visualization(self, dataset_id: str, viz_id: str) -> Visualization:
        """Load one visualization.

        Raises:
            DatasetNotFoundError: Unknown dataset or visualization.
        """
        self.registry.get_dataset(dataset_id)
        path = self._dir(dataset_id) / f"{viz_id}.json"
        if not viz_id.isalnum() or not path.exists():
            raise DatasetNotFoundError(f"{dataset_id}/{viz_id}")
        return Visualization.model_validate_json(path.read_text())

    def delete_visualization(self, dataset_id: str, viz_id: str) -> bool:
        """Remove a visualization; absent ids are a no-op."""
        self.registry.get_dataset(dataset_id)
        if not viz_id.isalnum():
            return False
        path = self._dir(dataset_id) / f"{viz_id}.json"
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        return True

    def stale_columns(self, viz: Visualization) -> list[str]:
        """Columns the visualization references that the schema no longer has."""
        schema = self.registry.get_schema(viz.dataset_id)
        return [c for c in viz.config.referenced_columns() if schema.column(c) is None]

    def render_series(self, viz: Visualization) -> list[AggregationResult]:
        """Aggregate the dataset's current rows as configured.

        Raises:
            ValidationError: The visualization references dropped columns.
        """
        stale = self.stale_columns(viz)
        if stale:
            raise ValidationError(
                f"Visualization {viz.id!r} references missing column(s) {stale}"
            )
        return self.registry.aggregate_dataset(
            viz.dataset_id,
            viz.config.group_by,
            viz.config.value_column,
            viz.config.aggregation,
        )
