"""Tests for saved visualizations."""

from __future__ import annotations

import pytest

from dataport.errors import DatasetNotFoundError, ValidationError
from dataport.models import AggregationKind, ChartConfig
from dataport.visualizations import VisualizationStore


@pytest.fixture
def viz_store(registry) -> VisualizationStore:
    return VisualizationStore(registry)


@pytest.fixture
def live(registry, sheet_session, sheet_url):
    sheet_session.values = [
        ["Region", "Revenue", "Units"],
        ["East", 10, 1],
        ["West", 5, 2],
        ["East", 20, 3],
    ]
    return registry.connect_sheet("acme", "Live", sheet_url)


def _config(**overrides) -> ChartConfig:
    params = {"group_by": "Region", "value_column": "Revenue", "aggregation": "sum"}
    params.update(overrides)
    return ChartConfig(**params)


class TestSaveAndList:
    def test_save_and_list(self, viz_store, live) -> None:
        viz = viz_store.save_visualization(live.id, "bar", _config())
        assert viz.dataset_id == live.id
        [listed] = viz_store.list_visualizations(live.id)
        assert listed.id == viz.id
        assert listed.config.aggregation == AggregationKind.sum

    def test_unknown_chart_type(self, viz_store, live) -> None:
        with pytest.raises(ValidationError, match="chart type"):
            viz_store.save_visualization(live.id, "hologram", _config())

    def test_unknown_column(self, viz_store, live) -> None:
        with pytest.raises(ValidationError, match="Unknown column"):
            viz_store.save_visualization(live.id, "bar", _config(value_column="Profit"))

    def test_axes_validated(self, viz_store, live) -> None:
        with pytest.raises(ValidationError):
            viz_store.save_visualization(live.id, "line", _config(x_axis="Nope"))

    def test_unknown_dataset(self, viz_store) -> None:
        with pytest.raises(DatasetNotFoundError):
            viz_store.save_visualization("missing", "bar", _config())

    def test_get_and_delete(self, viz_store, live) -> None:
        viz = viz_store.save_visualization(live.id, "pie", _config())
        assert viz_store.get_visualization(live.id, viz.id).chart_type == "pie"
        assert viz_store.delete_visualization(live.id, viz.id) is True
        assert viz_store.delete_visualization(live.id, viz.id) is False
        with pytest.raises(DatasetNotFoundError):
            viz_store.get_visualization(live.id, viz.id)

    def test_deleted_with_dataset(self, viz_store, registry, live) -> None:
        viz_store.save_visualization(live.id, "bar", _config())
        registry.delete_dataset(live.id)
        with pytest.raises(DatasetNotFoundError):
            viz_store.list_visualizations(live.id)


class TestRender:
    def test_render_series(self, viz_store, live) -> None:
        viz = viz_store.save_visualization(live.id, "bar", _config())
        series = viz_store.render_series(viz)
        assert [(r.group_key, r.aggregated_value) for r in series] == [("East", 30), ("West", 5)]

    def test_survives_column_reorder(self, viz_store, registry, live, sheet_session) -> None:
        viz = viz_store.save_visualization(live.id, "bar", _config())
        sheet_session.values = [["Units", "Revenue", "Region"], [1, 7, "North"]]
        registry.resync_dataset(live.id)
        assert viz_store.stale_columns(viz) == []
        [point] = viz_store.render_series(viz)
        assert point.group_key == "North"
        assert point.aggregated_value == 7

    def test_stale_after_drift(self, viz_store, registry, live, sheet_session) -> None:
        viz = viz_store.save_visualization(live.id, "bar", _config())
        sheet_session.values = [["Region", "Units"], ["East", 1]]
        registry.resync_dataset(live.id)
        assert viz_store.stale_columns(viz) == ["Revenue"]
        with pytest.raises(ValidationError, match="missing column"):
            viz_store.render_series(viz)
        # Kept, not rewritten
        assert len(viz_store.list_visualizations(live.id)) == 1
