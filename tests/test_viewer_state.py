"""ViewerStateMachine: initialization, panel loads, time alignment, debounce, rendering."""

from __future__ import annotations

import asyncio

import numpy as np
import pytest
from zarr.storage import MemoryStore

from ensemble_explorer.config import EmbedConfig, PanelSelection
from ensemble_explorer.errors import DiscoveryFailure, InvalidRequest, NotInitialized, PanelNotFound
from ensemble_explorer.services.data_loader import ChunkCache
from ensemble_explorer.services.viewer_state import PanelStatus, ViewerStateMachine, compute_stats

from conftest import (
    build_ensemble_store,
    delete_node,
    opener_for,
    panel_value,
    write_array,
    write_experiment,
    write_group,
)

A_CTRL = PanelSelection("ModelA", "ctrl")
B_CTRL = PanelSelection("ModelB", "ctrl")


def _viewer(store, debounce=0.01):
    return ViewerStateMachine(chunk_cache=ChunkCache(32), debounce_seconds=debounce, store_opener=opener_for(store))


def _config(**kwargs):
    return EmbedConfig(store_url="memory://test", **kwargs)


def test_initialize_discovers_hierarchy_grid_and_fill(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config()))

    assert viewer.initialized
    assert viewer.init_error is None
    assert viewer.hierarchy.depth == 2
    assert viewer.settings.selected_variable == "lithk"
    assert viewer.settings.fill_value == -9999.0
    assert (viewer.grid.width, viewer.grid.height) == (4, 3)
    assert len(viewer.panels) == 1
    assert viewer.panels[0].selected_model is None
    assert viewer.active_panel_id == viewer.panels[0].id
    assert viewer.panels[0].status is PanelStatus.EMPTY


def test_initialize_applies_overrides(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config(
        model="ModelA", variable="orog", colormap="magma", vmin=-1, vmax=1, default_year=2020, time=3,
    )))
    s = viewer.settings
    assert (viewer.panels[0].selected_model, viewer.panels[0].selected_experiment) == ("ModelA", "ctrl")
    assert s.selected_variable == "orog"
    assert s.colormap == "magma"
    assert (s.vmin, s.vmax, s.auto_range) == (-1.0, 1.0, False)
    assert s.target_year == 2020
    assert s.time_index == 3


def test_initialize_ignores_unknown_variable_and_colormap(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config(variable="nope", colormap="jet")))
    assert viewer.settings.selected_variable == "lithk"
    assert viewer.settings.colormap == "viridis"
    assert viewer.settings.auto_range is True


def test_discovery_failure_sets_init_error():
    viewer = _viewer(MemoryStore())
    with pytest.raises(DiscoveryFailure):
        asyncio.run(viewer.initialize(_config()))
    assert viewer.init_error
    assert not viewer.initialized
    assert not viewer.is_initializing
    with pytest.raises(NotInitialized):
        viewer.require_store()


def test_unexpected_open_error_becomes_discovery_failure():
    async def opener(url, ref=None, chunk_cache=None):
        raise ConnectionError("connection refused")

    viewer = ViewerStateMachine(store_opener=opener)
    with pytest.raises(DiscoveryFailure):
        asyncio.run(viewer.initialize(_config()))
    assert "connection refused" in viewer.init_error


def test_autoload_aligns_panels_on_first_loaded_year(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config(panels=[A_CTRL, B_CTRL], autoload=True)))
    a, b = viewer.panels

    assert a.status is PanelStatus.LOADED
    assert a.resolved_label == "2000-01-01"
    assert a.data[1, 1] == panel_value("ModelA", 2000)
    assert a.data_shape == (3, 4)
    assert viewer.settings.target_year == 2000
    # ModelB starts in 2010: no data for 2000
    assert b.status is PanelStatus.OUT_OF_RANGE
    assert b.data is None
    assert b.time_labels[0] == "2010-01-01"
    assert viewer.slider().to_dict() == {"mode": "year", "maxIndex": 60, "minYear": 2000, "maxYear": 2060}


def test_time_change_resolves_each_panel_against_target_year(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL, B_CTRL], autoload=True))
        a, b = viewer.panels

        viewer.set_time_index(5)
        assert viewer.settings.target_year == 2005
        assert a.pending_time_index == 5
        assert b.pending_time_index is None
        await viewer.wait_for_pending_reload()
        assert (a.resolved_time_index, a.pending_time_index) == (5, None)
        assert a.data[1, 1] == panel_value("ModelA", 2005)
        assert b.status is PanelStatus.OUT_OF_RANGE

        viewer.set_time_index(15)
        await viewer.wait_for_pending_reload()
        assert a.data[1, 1] == panel_value("ModelA", 2015)
        assert b.status is PanelStatus.LOADED
        assert b.resolved_label == "2015-01-01"
        assert b.data[1, 1] == panel_value("ModelB", 2015)

        viewer.set_target_year(2055)
        assert viewer.settings.time_index == 55
        await viewer.wait_for_pending_reload()
        assert a.status is PanelStatus.OUT_OF_RANGE
        assert b.data[1, 1] == panel_value("ModelB", 2055)

    asyncio.run(_go())


def test_time_changes_are_debounced_into_one_reload(ensemble_store):
    viewer = _viewer(ensemble_store, debounce=0.05)
    reloads = []

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL], autoload=True))
        original = viewer.load_all_panels

        async def counted():
            reloads.append(viewer.settings.time_index)
            await original()

        viewer.load_all_panels = counted
        for i in (1, 2, 3):
            viewer.set_time_index(i)
        assert viewer.reload_pending
        await viewer.wait_for_pending_reload()
        assert not viewer.reload_pending
        return viewer.panels[0]

    panel = asyncio.run(_go())
    assert reloads == [3]
    assert panel.data[1, 1] == panel_value("ModelA", 2003)


def test_negative_time_index_rejected(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config()))
    with pytest.raises(InvalidRequest):
        viewer.set_time_index(-1)


def test_active_panel_loads_before_siblings(ensemble_store):
    viewer = _viewer(ensemble_store)
    events = []

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL, B_CTRL, PanelSelection("ModelA", "hist")]))
        second = viewer.panels[1].id
        viewer.set_active_panel(second)
        original = viewer.load_panel

        async def traced(panel_id):
            events.append(("start", panel_id))
            await original(panel_id)
            events.append(("end", panel_id))

        viewer.load_panel = traced
        await viewer.load_all_panels()
        return second

    second = asyncio.run(_go())
    assert events[:2] == [("start", second), ("end", second)]
    assert len(events) == 6
    # The active panel anchored the shared year
    assert viewer.settings.target_year == 2010
    assert viewer.panels[0].resolved_label == "2010-01-01"
    hist = viewer.panels[2]
    assert hist.status is PanelStatus.OUT_OF_RANGE


def test_missing_variable_is_a_panel_error(ensemble_store):
    delete_node(ensemble_store, "combined/ModelB/ctrl/lithk")
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config(panels=[A_CTRL, B_CTRL], autoload=True, default_year=2020)))
    a, b = viewer.panels
    assert a.status is PanelStatus.LOADED
    assert b.status is PanelStatus.ERROR
    assert b.error == 'Variable "lithk" not available for ModelB/ctrl'


def test_non_spatial_rank_is_a_panel_error():
    store = MemoryStore()
    write_group(store)
    write_group(store, "flat")
    write_array(store, "flat/cube", np.zeros((2, 2, 2, 2), dtype=np.float32))
    viewer = _viewer(store)
    asyncio.run(viewer.initialize(_config(group_path="flat", autoload=True)))
    panel = viewer.panels[0]
    assert panel.status is PanelStatus.ERROR
    assert "not a spatial grid (shape: [2, 2, 2, 2])" in panel.error


def test_two_dimensional_variable_loads_without_time_axis():
    store = MemoryStore()
    write_group(store)
    write_group(store, "flat")
    write_array(store, "flat/bed", np.arange(6, dtype=np.float32).reshape(2, 3))
    viewer = _viewer(store)
    asyncio.run(viewer.initialize(_config(group_path="flat", autoload=True)))
    panel = viewer.panels[0]
    assert viewer.hierarchy.depth == 0
    assert panel.status is PanelStatus.LOADED
    assert panel.resolved_time_index == 0
    assert panel.time_labels is None
    assert viewer.slider().mode == "index"
    assert viewer.value_at(panel.id, 2, 1) == 5.0


def test_all_invalid_data_is_flagged(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config(panels=[A_CTRL], variable="orog", autoload=True)))
    panel = viewer.panels[0]
    assert panel.status is PanelStatus.LOADED
    assert panel.all_invalid is True
    assert panel.stats.nan_count == 12
    assert panel.stats.min is None


def test_variable_change_reloads_loaded_panels(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL], autoload=True))
        assert not viewer.panels[0].all_invalid
        await viewer.set_selected_variable("orog")

    asyncio.run(_go())
    assert viewer.panels[0].status is PanelStatus.LOADED
    assert viewer.panels[0].all_invalid is True
    with pytest.raises(InvalidRequest):
        asyncio.run(viewer.set_selected_variable("ivol"))


def test_variable_change_without_data_does_not_load(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL]))
        await viewer.set_selected_variable("orog")

    asyncio.run(_go())
    assert viewer.panels[0].status is PanelStatus.EMPTY


def test_model_change_keeps_valid_experiment(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL, PanelSelection("ModelA", "hist")], default_year=2020))
        a, hist = viewer.panels
        await viewer.set_panel_model(a.id, "ModelB")
        await viewer.set_panel_model(hist.id, "ModelB")
        return a, hist

    a, hist = asyncio.run(_go())
    assert (a.selected_model, a.selected_experiment) == ("ModelB", "ctrl")
    assert a.status is PanelStatus.LOADED
    assert a.data[1, 1] == panel_value("ModelB", 2020)
    # "hist" does not exist for ModelB: first experiment instead
    assert hist.selected_experiment == "ctrl"


def test_selection_validation(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL]))
        pid = viewer.panels[0].id
        with pytest.raises(InvalidRequest):
            await viewer.set_panel_model(pid, "ModelZ")
        with pytest.raises(InvalidRequest):
            await viewer.set_panel_experiment(pid, "ssp585")
        with pytest.raises(PanelNotFound):
            await viewer.set_panel_experiment("panel-999", "ctrl")
        await viewer.set_panel_experiment(pid, "hist")
        return viewer.panels[0]

    panel = asyncio.run(_go())
    assert panel.selected_experiment == "hist"
    assert panel.status is PanelStatus.LOADED


def test_selection_change_clears_hover_and_discards_stale_load(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL], default_year=2020))
        pid = viewer.panels[0].id
        viewer.set_hover((1, 1), pid)
        await asyncio.gather(viewer.load_panel(pid), viewer.set_panel_model(pid, "ModelB"))
        return viewer.panels[0]

    panel = asyncio.run(_go())
    assert viewer.settings.hover_position is None
    assert panel.selected_model == "ModelB"
    assert panel.data[1, 1] == panel_value("ModelB", 2020)


def test_instant_load_off_defers_loading(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL], instant_load=False))
        await viewer.set_panel_model(viewer.panels[0].id, "ModelB")
        viewer.set_time_index(3)
        assert not viewer.reload_pending

    asyncio.run(_go())
    assert viewer.panels[0].status is PanelStatus.EMPTY


def test_add_and_remove_panels(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config()))
    first = viewer.panels[0].id

    assert viewer.remove_panel(first) is False
    added = viewer.add_panel()
    assert (added.selected_model, added.selected_experiment) == ("ModelA", "ctrl")
    assert viewer.active_panel_id == added.id
    assert added.id != first

    assert viewer.remove_panel(added.id) is True
    assert viewer.active_panel_id == first
    assert [p.id for p in viewer.panels] == [first]
    with pytest.raises(PanelNotFound):
        viewer.remove_panel(added.id)


def test_color_range_transitions(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL, B_CTRL], default_year=2015, autoload=True))

    asyncio.run(_go())
    s = viewer.settings
    assert s.auto_range
    # fill cells excluded; union of 2015 and 3015
    assert (s.vmin, s.vmax) == (2015.0, 3015.0)

    viewer.set_color_range(0, 10)
    assert (s.vmin, s.vmax, s.auto_range) == (0.0, 10.0, False)
    with pytest.raises(InvalidRequest):
        viewer.set_color_range(float("nan"), 1)

    viewer.set_auto_range(True)
    assert (s.vmin, s.vmax) == (2015.0, 3015.0)

    with pytest.raises(InvalidRequest):
        viewer.set_colormap("jet")
    viewer.set_colormap("RdBu")
    assert s.colormap == "RdBu"


def test_auto_range_drops_panels_that_go_out_of_range(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL, B_CTRL], default_year=2015, autoload=True))
        viewer.set_time_index(5)
        await viewer.wait_for_pending_reload()

    asyncio.run(_go())
    a, b = viewer.panels
    assert b.status is PanelStatus.OUT_OF_RANGE
    # only ModelA at 2005 remains: degenerate range padded by 10%
    assert (viewer.settings.vmin, viewer.settings.vmax) == pytest.approx((1804.5, 2205.5))


def test_auto_range_follows_removed_and_failed_panels(ensemble_store):
    delete_node(ensemble_store, "combined/ModelA/hist/lithk")
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config(panels=[A_CTRL, B_CTRL], default_year=2015, autoload=True)))
    a, b = viewer.panels
    s = viewer.settings

    assert viewer.remove_panel(b.id) is True
    assert (s.vmin, s.vmax) == pytest.approx((1813.5, 2216.5))

    c = viewer.add_panel()
    asyncio.run(viewer.set_panel_selection(c.id, model="ModelB"))
    assert (s.vmin, s.vmax) == (2015.0, 3015.0)
    asyncio.run(viewer.set_panel_selection(c.id, model="ModelA", experiment="hist"))
    assert c.status is PanelStatus.ERROR
    assert (s.vmin, s.vmax) == pytest.approx((1813.5, 2216.5))

    viewer.set_color_range(0, 10)
    viewer.remove_panel(c.id)
    assert (s.vmin, s.vmax) == (0.0, 10.0)


def test_time_label_tracks_loaded_slice_until_reload(ensemble_store):
    viewer = _viewer(ensemble_store, debounce=5.0)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL, B_CTRL], default_year=2015, autoload=True))
        a, b = viewer.panels
        viewer.set_hover((1, 1), a.id)
        viewer.set_time_index(20)
        assert viewer.reload_pending
        assert (a.pending_time_index, b.pending_time_index) == (20, 10)
        assert (a.resolved_label, b.resolved_label) == ("2015-01-01", "2015-01-01")
        assert [h["timeLabel"] for h in viewer.hover_values()] == ["2015-01-01", "2015-01-01"]
        assert a.to_dict()["resolvedTimeIndex"] == 15
        viewer.cancel_pending_reload()
        await viewer.load_all_panels()
        assert [h["timeLabel"] for h in viewer.hover_values()] == ["2020-01-01", "2020-01-01"]
        assert a.data[1, 1] == panel_value("ModelA", 2020)

    asyncio.run(_go())

def test_value_probe_and_hover(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config(panels=[A_CTRL, B_CTRL], autoload=True)))
    a, b = viewer.panels

    assert viewer.value_at(a.id, 1, 1) == 2000.0
    assert viewer.value_at(a.id, 0, 0) is None  # fill
    assert viewer.value_at(a.id, 4, 0) is None  # outside
    assert viewer.value_at(b.id, 1, 1) is None  # out of range, no data

    viewer.set_hover((2, 1), a.id)
    values = viewer.hover_values()
    assert values[0]["value"] == 2000.0
    assert values[0]["text"] == "2000.00"
    assert values[0]["timeLabel"] == "2000-01-01"
    assert values[1]["value"] is None
    viewer.set_hover(None)
    assert viewer.settings.hovered_panel_id is None


def test_render_generation_discards_stale_bitmaps(ensemble_store):
    viewer = _viewer(ensemble_store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL], autoload=True))
        pid = viewer.panels[0].id
        first, second = await asyncio.gather(viewer.render_panel(pid), viewer.render_panel(pid))
        cached = await viewer.render_panel(pid)
        viewer.set_colormap("gray")
        recolored = await viewer.render_panel(pid)
        return first, second, cached, recolored

    first, second, cached, recolored = asyncio.run(_go())
    panel = viewer.panels[0]
    assert first is None
    assert second[:8] == b"\x89PNG\r\n\x1a\n"
    assert cached is second
    assert recolored != second
    assert panel.bitmap_generation == 3


def test_render_without_data_returns_none(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config()))
    assert asyncio.run(viewer.render_panel(viewer.panels[0].id)) is None


def test_data_view_switch_keeps_valid_panels():
    store = build_ensemble_store()
    write_group(store, "state")
    write_group(store, "state/ModelA")
    write_experiment(store, "state/ModelA/ctrl", "ModelA", 2000, 5)
    viewer = _viewer(store)

    async def _go():
        await viewer.initialize(_config(panels=[A_CTRL, B_CTRL], autoload=True))
        await viewer.set_data_view("state")

    asyncio.run(_go())
    assert viewer.data_view == "state"
    assert viewer.hierarchy.models == ["ModelA"]
    assert [(p.selected_model, p.status) for p in viewer.panels] == [("ModelA", PanelStatus.EMPTY)]
    assert viewer.settings.target_year is None
    assert viewer.settings.time_index == 0

    with pytest.raises(DiscoveryFailure):
        asyncio.run(viewer.set_data_view("flux"))
    with pytest.raises(InvalidRequest):
        asyncio.run(viewer.set_data_view("bogus"))


def test_compute_stats():
    stats = compute_stats(np.array([np.nan, 1.0, np.inf, -2.0], dtype=np.float32))
    assert (stats.min, stats.max, stats.nan_count, stats.count) == (-2.0, 1.0, 1, 4)


def test_snapshot_shape(ensemble_store):
    viewer = _viewer(ensemble_store)
    asyncio.run(viewer.initialize(_config(panels=[A_CTRL], autoload=True)))
    snap = viewer.snapshot()
    assert snap["initialized"] is True
    assert snap["hierarchy"]["models"] == ["ModelA", "ModelB"]
    assert snap["panels"][0]["status"] == "loaded"
    assert snap["panels"][0]["groupMetadata"]["title"] == "ModelA run"
    assert snap["settings"]["variableMetadata"]["units"] == "m"
    assert snap["store"]["chunk_cache"]["misses"] > 0
