"""Greedy selection, thread application, the generation loop and replay."""

import numpy as np
import pytest
from hypothesis import given, settings, HealthCheck, strategies as st

from threadart_engine import (
    NO_PIN,
    STORAGE_KEY,
    GenerationState,
    GeneratorConfig,
    LineCache,
    ThreadArtSession,
    build_target,
)
from threadart_store import KeyValueStore


def started(image, **cfg):
    session = ThreadArtSession(GeneratorConfig(**cfg))
    session.start(image)
    return session


# =============================================================================
# Target image
# =============================================================================

class TestTarget:
    def test_luminance_weights(self):
        img = np.zeros((16, 16, 3), dtype=np.uint8)
        img[...] = (100, 150, 200)
        target = build_target(img, 16)
        # 0.299*100 + 0.587*150 + 0.114*200 = 140.75
        assert target.dtype == np.uint8
        assert target.shape == (256,)
        assert np.all(target == 140)

    def test_gray_values_survive(self):
        img = np.arange(256, dtype=np.uint8).reshape(16, 16)
        np.testing.assert_array_equal(build_target(img, 16), np.arange(256))

    def test_center_crop(self):
        img = np.zeros((10, 30), dtype=np.uint8)
        img[:, 10:20] = 255
        assert np.all(build_target(img, 10) == 255)

    def test_transparent_is_white(self):
        img = np.zeros((12, 12, 4), dtype=np.uint8)
        assert np.all(build_target(img, 12) == 255)

    def test_resampled_to_solve_size(self, noise_image):
        assert build_target(noise_image, 24).shape == (24 * 24,)

    def test_pil_image_source(self):
        from PIL import Image
        img = Image.new("RGB", (20, 10), (0, 0, 0))
        assert np.all(build_target(img, 8) == 0)

    @pytest.mark.parametrize("bad", [np.zeros(10, dtype=np.uint8), "image.png", np.zeros((4, 4, 2))])
    def test_rejects_unsupported(self, bad):
        with pytest.raises(ValueError):
            build_target(bad, 8)


# =============================================================================
# Gain, selection and application
# =============================================================================

class TestGain:
    def test_white_target_has_no_gain(self, white_image):
        s = started(white_image, solve_size=32, pins=12, thickness=1)
        assert all(s.line_gain(0, j) == 0 for j in range(1, 12))

    def test_black_target_gain(self, black_image):
        s = started(black_image, solve_size=32, pins=12, thickness=1)
        n = len(s.cache.get(0, 6))
        # 255 -> 245 on every covered pixel
        assert s.line_gain(0, 6) == n * (255 ** 2 - 245 ** 2)

    def test_gain_after_thread(self, black_image):
        s = started(black_image, solve_size=32, pins=12, thickness=0)
        s.apply_thread(0, 6)
        n = len(s.cache.get(0, 6))
        # 245 -> 236
        assert s.line_gain(6, 0) == n * (245 ** 2 - 236 ** 2)

    def test_pixels_at_or_below_target_ignored(self):
        img = np.full((32, 32), 240, dtype=np.uint8)
        s = started(img, solve_size=32, pins=12, thickness=0)
        n = len(s.cache.get(0, 6))
        assert s.line_gain(0, 6) == n * (15 ** 2 - 5 ** 2)
        s.apply_thread(0, 6)
        # 245 -> 236 overshoots, still a small gain
        assert s.line_gain(0, 6) == n * (5 ** 2 - 4 ** 2)
        s.apply_thread(0, 6)
        assert s.line_gain(0, 6) == 0


class TestApplyThread:
    def test_darkens_line_only(self, black_image):
        s = started(black_image, solve_size=32, pins=12, thickness=1)
        idx = s.cache.get(2, 9)
        s.apply_thread(2, 9)
        assert np.all(s.current[idx] == 245)
        mask = np.ones(32 * 32, dtype=bool)
        mask[idx] = False
        assert np.all(s.current[mask] == 255)

    def test_mirrors_display_buffer(self, black_image):
        s = started(black_image, solve_size=32, pins=12, thickness=1)
        s.apply_thread(2, 9)
        s.apply_thread(9, 4)
        flat = s.rgba.reshape(-1, 4)
        for ch in range(3):
            np.testing.assert_array_equal(flat[:, ch], s.current)
        assert np.all(flat[:, 3] == 255)

    def test_writes_even_below_target(self, black_image):
        s = started(black_image, solve_size=32, pins=12, thickness=0)
        idx = s.cache.get(0, 6)
        for _ in range(3):
            s.apply_thread(0, 6)
        assert np.all(s.current[idx] == 227)

    def test_never_below_zero(self, black_image):
        s = started(black_image, solve_size=32, pins=12, thickness=0, darken=255)
        idx = s.cache.get(0, 6)
        s.apply_thread(0, 6)
        s.apply_thread(0, 6)
        assert np.all(s.current[idx] == 0)


class TestSelector:
    def test_prefers_longest_line_on_black(self, black_image):
        s = started(black_image, solve_size=32, pins=16, thickness=0, cooldown=1)
        lengths = {j: len(s.cache.get(0, j)) for j in range(1, 16)}
        best = max(lengths.values())
        assert s.next_pin_index(0) == min(j for j, n in lengths.items() if n == best)

    def test_tie_goes_to_lowest_pin(self, black_image):
        s = started(black_image, solve_size=32, pins=12, thickness=0, cooldown=0)
        gains = [s.line_gain(3, j) if j != 3 else -1 for j in range(12)]
        assert s.next_pin_index(3) == gains.index(max(gains))

    def test_all_candidates_in_cooldown(self, black_image):
        s = started(black_image, solve_size=32, pins=3, cooldown=3)
        result = s.run()
        assert result.state is GenerationState.FINISHED
        assert s.steps == 2
        assert sorted(s.path) == [0, 1, 2]
        assert s.next_pin_index(s.path[-1]) == NO_PIN

    def test_saturation_sentinel(self, white_image):
        s = started(white_image, solve_size=32, pins=12)
        assert s.next_pin_index(0) == NO_PIN

    def test_dark_area_out_of_reach_of_current_pin(self):
        cache = LineCache()
        cache.configure(32, 12, 0)
        from_zero = set().union(*(cache.get(0, j).tolist() for j in range(1, 12)))
        pixels = sorted(set(cache.get(3, 8).tolist()) - from_zero)
        assert pixels
        img = np.full(32 * 32, 255, dtype=np.uint8)
        img[pixels] = 0

        s = started(img.reshape(32, 32), solve_size=32, pins=12, thickness=0, threads=50)
        assert all(s.line_gain(0, j) == 0 for j in range(1, 12))
        assert s.can_improve()
        assert s.next_pin_index(0) == 1
        s.run()
        assert s.steps > 0
        assert np.any(s.current[pixels] < 255)

    def test_saturation_can_be_disabled(self, white_image):
        s = started(white_image, solve_size=32, pins=12, stop_when_saturated=False)
        # every gain is 0, first eligible pin wins
        assert s.next_pin_index(0) == 1

    def test_cooldown_respected(self, noise_image):
        s = started(noise_image, solve_size=32, pins=30, threads=150, thickness=1, cooldown=5)
        s.run()
        path = s.path
        assert len(path) > 10
        for i in range(1, len(path)):
            assert path[i] not in path[max(0, i - 5):i]


# =============================================================================
# Generation loop
# =============================================================================

class TestGenerationLoop:
    def test_initial_state(self):
        s = ThreadArtSession()
        assert s.state is GenerationState.IDLE
        assert s.path == []
        with pytest.raises(RuntimeError):
            s.export_result()
        with pytest.raises(RuntimeError):
            s.render_at_step(0)

    def test_white_image_stops_immediately(self):
        img = np.full((10, 10), 255, dtype=np.uint8)
        s = started(img, solve_size=10, pins=6)
        assert s.state is GenerationState.RUNNING
        result = s.advance()
        assert result.state is GenerationState.FINISHED
        assert result.applied == 0
        payload = s.export_result()
        assert payload["threads"] == 0
        assert payload["path"] == [0]

    def test_thread_budget(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=5)
        s.run()
        assert s.state is GenerationState.FINISHED
        assert s.steps == 5
        assert s.path[0] == 0

    def test_zero_budget(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=0)
        assert s.advance().state is GenerationState.FINISHED
        assert s.path == [0]

    def test_quantum_size(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=50, steps_per_quantum=3)
        result = s.advance()
        assert result.applied == 3
        assert result.steps == 3
        assert result.progress == pytest.approx(3 / 50)

    def test_chunking_does_not_change_path(self, noise_image, small_config):
        a = ThreadArtSession(small_config)
        a.start(noise_image)
        while a.advance(1).state is GenerationState.RUNNING:
            pass
        b = ThreadArtSession(small_config)
        b.start(noise_image)
        b.advance(10 ** 6)
        assert a.path == b.path
        np.testing.assert_array_equal(a.current, b.current)

    def test_export_payload(self, noise_image, small_config):
        s = ThreadArtSession(small_config)
        s.start(noise_image)
        s.run()
        payload = s.export_result()
        assert set(payload) == {"pins", "threads", "solveSize", "thickness", "darken", "cooldown", "path"}
        assert payload["pins"] == 24
        assert payload["solveSize"] == 32
        assert payload["thickness"] == 1
        assert payload["darken"] == 10
        assert payload["cooldown"] == 3
        assert len(payload["path"]) == payload["threads"] + 1
        assert payload["path"][0] == 0
        assert all(0 <= p < 24 for p in payload["path"])

    def test_export_is_a_copy(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=4)
        s.run()
        s.export_result()["path"].append(99)
        assert len(s.export_result()["path"]) == 5

    def test_finish_persists(self, black_image, store):
        s = ThreadArtSession(GeneratorConfig(solve_size=32, pins=12, threads=8), store=store)
        s.start(black_image)
        s.run()
        assert store.get_json(STORAGE_KEY) == s.export_result()

    def test_finish_survives_store_write_failure(self, black_image, store, monkeypatch, caplog):
        def broken(key, obj):
            raise OSError("disk full")
        monkeypatch.setattr(store, "set_json", broken)
        events = []
        s = ThreadArtSession(GeneratorConfig(solve_size=32, pins=12, threads=8), store=store,
                             on_progress=lambda f, msg: events.append(msg))
        s.start(black_image)
        assert s.run().state is GenerationState.FINISHED
        assert s.export_result()["threads"] == 8
        assert events[-1].startswith("Done.")
        assert "disk full" in caplog.text

    def test_finish_over_undecodable_store_file(self, black_image, tmp_path):
        p = tmp_path / "s.json"
        p.write_bytes(b"\xff\xfe{not utf8")
        store = KeyValueStore(p)
        s = ThreadArtSession(GeneratorConfig(solve_size=32, pins=12, threads=8), store=store)
        s.start(black_image)
        assert s.run().state is GenerationState.FINISHED
        assert store.get_json(STORAGE_KEY) == s.export_result()

    def test_stop(self, black_image, store):
        s = ThreadArtSession(GeneratorConfig(solve_size=32, pins=12, threads=100), store=store)
        s.start(black_image)
        s.advance(4)
        assert s.stop() is True
        assert s.state is GenerationState.STOPPED
        assert s.advance().applied == 0
        assert s.steps == 4
        assert store.get(STORAGE_KEY) is None
        with pytest.raises(RuntimeError):
            s.export_result()
        assert s.stop() is False

    def test_restart_after_stop(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=100)
        s.advance(4)
        s.stop()
        s.start(black_image)
        assert s.state is GenerationState.RUNNING
        assert s.path == [0]
        assert np.all(s.current == 255)
        assert [k.step for k in s.keyframes] == [0]

    def test_start_while_running(self, black_image):
        s = started(black_image, solve_size=32, pins=12)
        with pytest.raises(RuntimeError):
            s.start(black_image)

    def test_invalid_start_keeps_previous_run(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=3)
        s.run()
        before = s.export_result()
        with pytest.raises(ValueError):
            s.start(black_image, GeneratorConfig(pins=2))
        with pytest.raises(ValueError):
            s.start("not an image")
        assert s.state is GenerationState.FINISHED
        assert s.export_result() == before

    def test_cache_reused_for_same_geometry(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=3)
        s.run()
        line = s.cache.get(0, 6)
        s.start(black_image)
        assert s.cache.get(0, 6) is line
        s.run()
        s.start(black_image, GeneratorConfig(solve_size=32, pins=12, threads=3, thickness=0))
        assert s.cache.get(0, 6) is not line

    def test_progress_reports(self, black_image):
        events = []
        s = ThreadArtSession(
            GeneratorConfig(solve_size=32, pins=12, threads=60, progress_every=25),
            on_progress=lambda f, msg: events.append((f, msg)),
        )
        s.start(black_image)
        s.run()
        assert events[0] == (0.0, "Generating…")
        assert events[1] == (pytest.approx(25 / 60), "Generating… 25/60 threads")
        assert events[-1][0] == 1.0
        assert events[-1][1].startswith("Done. Threads: 60")

    def test_keyframe_schedule(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=20, key_every=7)
        s.run()
        assert [k.step for k in s.keyframes] == [0, 7, 14]

    def test_monotonic_darkening(self, noise_image, small_config):
        s = ThreadArtSession(small_config)
        s.start(noise_image)
        prev = s.current.copy()
        while s.advance(1).state is GenerationState.RUNNING:
            now = s.current
            assert np.all(now <= prev)
            prev = now.copy()


# =============================================================================
# Replay
# =============================================================================

class TestReplay:
    def _live_run(self, image, config):
        s = ThreadArtSession(config)
        s.start(image)
        live = [s.current.copy()]
        while s.advance(1).state is GenerationState.RUNNING:
            live.append(s.current.copy())
        return s, live

    def test_reconstruct_matches_live(self, noise_image, small_config):
        s, live = self._live_run(noise_image, small_config)
        assert len(live) == s.steps + 1
        for step, snapshot in enumerate(live):
            np.testing.assert_array_equal(s.reconstruct_gray(step), snapshot)

    @given(seed=st.integers(0, 2 ** 16), key_every=st.integers(1, 12), thickness=st.integers(0, 2))
    @settings(max_examples=15, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_reconstruct_matches_live_random(self, seed, key_every, thickness):
        img = np.random.default_rng(seed).integers(0, 256, size=(24, 24), dtype=np.uint8)
        config = GeneratorConfig(solve_size=24, pins=16, threads=30, thickness=thickness, key_every=key_every)
        s, live = self._live_run(img, config)
        for step in range(0, len(live), 3):
            np.testing.assert_array_equal(s.reconstruct_gray(step), live[step])

    def test_find_keyframe(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=20, key_every=7)
        s.run()
        assert [s.find_keyframe(x).step for x in (0, 6, 7, 13, 14, 20)] == [0, 0, 7, 7, 14, 14]

    def test_reconstruct_returns_fresh_buffer(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=10, key_every=5)
        s.run()
        g = s.reconstruct_gray(5)
        g[:] = 0
        assert np.any(s.find_keyframe(5).snapshot != 0)
        assert np.any(s.reconstruct_gray(5) != 0)

    def test_render_at_step(self, black_image):
        s = started(black_image, solve_size=32, pins=12, threads=10)
        s.run()
        final = s.render_at_step(10)
        assert final.shape == (32, 32, 4)
        np.testing.assert_array_equal(final, s.rgba)
        np.testing.assert_array_equal(s.render_at_step(10 ** 6), final)
        assert np.all(s.render_at_step(-3)[..., :3] == 255)


# =============================================================================
# Scenarios
# =============================================================================

class TestCenterPixelScenario:
    SIZE = 64
    CENTER = 32 * 64 + 32

    @pytest.fixture
    def dot_image(self):
        img = np.full((self.SIZE, self.SIZE), 255, dtype=np.uint8)
        img[32, 32] = 0
        return img

    def test_first_chord_crosses_the_dot(self, dot_image):
        s = started(dot_image, solve_size=self.SIZE, pins=120, thickness=0)
        s.advance(1)
        assert s.path == [0, 60]
        assert self.CENTER in s.cache.get(0, 60)
        assert s.current[self.CENTER] == 245
        # pin 0 is cooling down, but the dot can still get darker
        assert s.advance(1).state is GenerationState.RUNNING
        assert s.steps == 2

    def test_dot_darkens_until_no_gain(self, dot_image):
        s = started(dot_image, solve_size=self.SIZE, pins=120, thickness=0, cooldown=1, threads=1000)
        values = [int(s.current[self.CENTER])]
        while s.advance(1).state is GenerationState.RUNNING:
            values.append(int(s.current[self.CENTER]))

        assert s.steps < 1000
        assert set(s.path) == {0, 60}
        # strictly darker after every crossing
        assert all(b < a for a, b in zip(values, values[1:]))
        last = values[-1]
        assert (10 * last) // 255 == 0
        assert s.line_gain(0, 60) == 0
