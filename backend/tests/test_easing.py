"""Tests for easing curves and the speed-curve time remap."""
import numpy as np
import pytest

from mediagraph.media.easing import (
    EASING_PRESETS, NON_MONOTONIC_PRESETS, cubic_bezier, frame_index_map, resolve_easing,
    warp_source_times,
)

SAMPLES = np.linspace(0.0, 1.0, 201)


class TestPresets:
    @pytest.mark.parametrize("name", sorted(EASING_PRESETS))
    def test_endpoints(self, name):
        values = np.asarray(EASING_PRESETS[name](np.array([0.0, 1.0])), dtype=float)
        assert values[0] == pytest.approx(0.0, abs=1e-3)
        assert values[1] == pytest.approx(1.0, abs=1e-3)

    @pytest.mark.parametrize("name", sorted(set(EASING_PRESETS) - NON_MONOTONIC_PRESETS))
    def test_monotonic(self, name):
        values = np.asarray(EASING_PRESETS[name](SAMPLES), dtype=float)
        assert np.all(np.diff(values) >= -1e-9)

    def test_ease_in_starts_slow(self):
        assert EASING_PRESETS["easeInQuad"](np.array(0.5)) == pytest.approx(0.25)

    def test_ease_out_starts_fast(self):
        assert EASING_PRESETS["easeOutQuad"](np.array(0.5)) == pytest.approx(0.75)

    def test_back_overshoots(self):
        assert EASING_PRESETS["easeOutBack"](SAMPLES).max() > 1.0
        assert EASING_PRESETS["easeInBack"](SAMPLES).min() < 0.0

    def test_elastic_oscillates(self):
        values = EASING_PRESETS["easeOutElastic"](SAMPLES)
        assert values.max() > 1.0
        assert np.any(np.diff(values) < 0)

    def test_bounce_stays_in_range(self):
        values = EASING_PRESETS["easeOutBounce"](SAMPLES)
        assert values.min() >= 0.0
        assert values.max() <= 1.0 + 1e-9
        assert np.any(np.diff(values) < 0)

    def test_non_monotonic_families(self):
        assert NON_MONOTONIC_PRESETS == {
            f"{prefix}{family}"
            for prefix in ("easeIn", "easeOut", "easeInOut")
            for family in ("Back", "Elastic", "Bounce")
        }


class TestCubicBezier:
    def test_linear_handles(self):
        curve = cubic_bezier(0.0, 0.0, 1.0, 1.0)
        assert np.allclose(curve(SAMPLES), SAMPLES, atol=1e-6)

    def test_css_ease_in_out_is_symmetric(self):
        curve = cubic_bezier(0.42, 0.0, 0.58, 1.0)
        assert curve(np.array(0.5)) == pytest.approx(0.5, abs=1e-6)
        assert curve(np.array(0.25)) == pytest.approx(1 - curve(np.array(0.75)), abs=1e-6)

    def test_out_of_range_x_is_clamped(self):
        curve = cubic_bezier(-1.0, 0.0, 2.0, 1.0)
        values = curve(SAMPLES)
        assert values[0] == pytest.approx(0.0)
        assert values[-1] == pytest.approx(1.0)
        assert np.all(np.diff(values) >= -1e-9)


class TestResolveEasing:
    def test_preset_wins_over_handles(self):
        fn = resolve_easing("easeInQuad", [0.0, 0.0, 1.0, 1.0])
        assert fn(np.array(0.5)) == pytest.approx(0.25)

    def test_handles_without_preset(self):
        fn = resolve_easing(None, [0.0, 0.0, 1.0, 1.0])
        assert fn(np.array(0.3)) == pytest.approx(0.3, abs=1e-6)

    def test_default_handles(self):
        fn = resolve_easing(None, None)
        assert fn(np.array(0.5)) == pytest.approx(0.5, abs=1e-6)

    def test_unknown_preset(self):
        with pytest.raises(ValueError, match="Unknown easing preset"):
            resolve_easing("easeInWobble", None)

    def test_wrong_handle_count(self):
        with pytest.raises(ValueError, match="four values"):
            resolve_easing(None, [0.1, 0.2])


class TestWarp:
    def test_frame_count_follows_output_duration(self):
        times = warp_source_times(EASING_PRESETS["linear"], 4.0, 2.0, 30.0)
        assert len(times) == 60
        assert times[0] == 0.0
        assert times[-1] == pytest.approx(4.0)

    def test_times_never_step_backwards(self):
        times = warp_source_times(EASING_PRESETS["easeInOutCubic"], 5.0, 1.5, 24.0)
        assert np.all(np.diff(times) >= 0)

    @pytest.mark.parametrize("name", sorted(NON_MONOTONIC_PRESETS))
    def test_non_monotonic_curves_are_flattened(self, name):
        times = warp_source_times(EASING_PRESETS[name], 5.0, 2.0, 30.0)
        assert np.all(np.diff(times) >= 0)
        assert times.min() >= 0.0
        assert times.max() <= 5.0
        assert times[-1] == pytest.approx(5.0, abs=1e-3)

    def test_frame_index_map_clamps(self):
        indices = frame_index_map(np.array([0.0, 0.5, 10.0]), 30.0, 60)
        assert indices.tolist() == [0, 15, 59]
