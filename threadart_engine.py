"""Greedy thread-art solver.

Pins sit on a circle, every chord darkens the pixels it covers and the solver
keeps choosing the chord that removes the most squared error against the
target image. All state of one run lives in a ThreadArtSession.
"""
import bisect
import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np
from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

STORAGE_KEY = "threadArtData"
NO_PIN = -1


# =================================================================================
# CONFIGURATION
# =================================================================================
@dataclass(frozen=True)
class GeneratorConfig:
    solve_size: int = 320
    pins: int = 120
    threads: int = 2500
    thickness: int = 2
    darken: int = 10
    cooldown: int = None  # None -> max(3, pins // 25)
    key_every: int = 100
    steps_per_quantum: int = 3
    progress_every: int = 25
    # finish early once no pixel can get closer to its target
    stop_when_saturated: bool = True

    @property
    def effective_cooldown(self):
        if self.cooldown is not None:
            return self.cooldown
        return max(3, self.pins // 25)

    def validate(self):
        checks = [
            ("solve_size", self.solve_size, 8, None),
            ("pins", self.pins, 3, None),
            ("threads", self.threads, 0, None),
            ("thickness", self.thickness, 0, None),
            ("darken", self.darken, 0, 255),
            ("key_every", self.key_every, 1, None),
            ("steps_per_quantum", self.steps_per_quantum, 1, None),
            ("progress_every", self.progress_every, 1, None),
        ]
        if self.cooldown is not None:
            checks.append(("cooldown", self.cooldown, 0, None))
        for name, value, lo, hi in checks:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            if value < lo or (hi is not None and value > hi):
                bounds = f">= {lo}" if hi is None else f"in [{lo}, {hi}]"
                raise ValueError(f"{name} must be {bounds}, got {value}")
        return self

    def with_overrides(self, **overrides):
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **overrides).validate()


# =================================================================================
# GEOMETRY
# =================================================================================
def pin_positions(pin_count, solve_size):
    """Pins on a circle of radius solve_size / 2, counter-clockwise from 3 o'clock.

    Screen coordinates, so y grows downwards and the sine term is subtracted.
    Returns a float array of shape (pin_count, 2) holding (x, y).
    """
    if pin_count < 3:
        raise ValueError(f"At least 3 pins are needed, got {pin_count}")
    r = solve_size / 2
    angles = 2 * math.pi * np.arange(pin_count) / pin_count
    return np.stack([r + r * np.cos(angles), r - r * np.sin(angles)], axis=1)


def _round_half_up(v):
    return int(math.floor(v + 0.5))


# =================================================================================
# RASTERIZER
# =================================================================================
class LineRasterizer:
    """Thick Bresenham lines on a size x size grid, as flat pixel indices."""

    def __init__(self, size, thickness):
        self.size = size
        self.thickness = thickness
        self._seen = bytearray(size * size)
        t = thickness
        self._disk = [
            (dx, dy)
            for dy in range(-t, t + 1)
            for dx in range(-t, t + 1)
            if dx * dx + dy * dy <= t * t
        ]

    def rasterize(self, p0, p1):
        x0, y0 = _round_half_up(p0[0]), _round_half_up(p0[1])
        x1, y1 = _round_half_up(p1[0]), _round_half_up(p1[1])
        size, seen, disk = self.size, self._seen, self._disk

        dx, sx = abs(x1 - x0), (1 if x0 < x1 else -1)
        dy, sy = -abs(y1 - y0), (1 if y0 < y1 else -1)
        err = dx + dy
        out = []

        while True:
            for ox, oy in disk:
                x, y = x0 + ox, y0 + oy
                if x < 0 or y < 0 or x >= size or y >= size:
                    continue
                p = y * size + x
                if not seen[p]:
                    seen[p] = 1
                    out.append(p)
            if x0 == x1 and y0 == y1:
                break
            e2 = 2 * err
            if e2 >= dy:
                err += dy
                x0 += sx
            if e2 <= dx:
                err += dx
                y0 += sy

        for p in out:
            seen[p] = 0
        return np.array(out, dtype=np.intp)


class LineCache:
    """Pixel indices per unordered pin pair, rasterized on first use."""

    def __init__(self):
        self._lines = {}
        self._signature = None
        self._positions = None
        self._rasterizer = None

    @property
    def signature(self):
        return self._signature

    def __len__(self):
        return len(self._lines)

    def configure(self, solve_size, pin_count, thickness):
        signature = (solve_size, pin_count, thickness)
        if signature == self._signature:
            return False
        logger.debug("Line cache reset for size=%d pins=%d thickness=%d", *signature)
        self._signature = signature
        self._positions = pin_positions(pin_count, solve_size)
        self._rasterizer = LineRasterizer(solve_size, thickness)
        self._lines.clear()
        return True

    def clear(self):
        self._lines.clear()

    @property
    def positions(self):
        return self._positions

    def get(self, a, b):
        if self._signature is None:
            raise RuntimeError("LineCache.configure() has not been called")
        if a == b:
            raise ValueError(f"A line needs two different pins, got {a} twice")
        key = (a, b) if a < b else (b, a)
        line = self._lines.get(key)
        if line is None:
            pin_count = self._signature[1]
            if not (0 <= key[0] and key[1] < pin_count):
                raise ValueError(f"Pin pair {key} outside [0, {pin_count})")
            line = self._rasterizer.rasterize(self._positions[key[0]], self._positions[key[1]])
            line.setflags(write=False)
            self._lines[key] = line
        return line


# =================================================================================
# TARGET IMAGE
# =================================================================================
def build_target(image, solve_size):
    """Grayscale target buffer (flat uint8, solve_size**2) from a PIL image or array.

    The image is centre-cropped to a square, scaled to solve_size, laid over
    white and converted to 0.299 R + 0.587 G + 0.114 B, truncated.
    """
    if isinstance(image, np.ndarray):
        image = _array_to_image(image)
    if not isinstance(image, Image.Image):
        raise ValueError(f"Unsupported image source: {type(image).__name__}")
    w, h = image.size
    if w == 0 or h == 0:
        raise ValueError("Image is empty")

    side = min(w, h)
    left, top = (w - side) // 2, (h - side) // 2
    square = image.convert("RGBA").crop((left, top, left + side, top + side))
    if side != solve_size:
        square = square.resize((solve_size, solve_size), Image.Resampling.BILINEAR)

    bg = Image.new("RGBA", square.size, (255, 255, 255, 255))
    rgb = np.asarray(Image.alpha_composite(bg, square).convert("RGB"), dtype=np.int32)
    # integer weights: exact truncation, white stays 255
    gray = (299 * rgb[..., 0] + 587 * rgb[..., 1] + 114 * rgb[..., 2]) // 1000
    return gray.astype(np.uint8).reshape(-1)


def _array_to_image(arr):
    if arr.ndim == 2 or (arr.ndim == 3 and arr.shape[2] in (3, 4)):
        return Image.fromarray(np.ascontiguousarray(arr, dtype=np.uint8))
    raise ValueError(f"Unsupported image array shape {arr.shape}")


def load_image(path):
    img = Image.open(path)
    return ImageOps.exif_transpose(img)


def darken_values(values, darken):
    """Brightness after one thread passes over values (uint8 in, uint8 out)."""
    c = values.astype(np.int32)
    return np.maximum(c - (darken * c) // 255, 0).astype(np.uint8)


def gray_to_rgba(gray, size):
    rgba = np.empty((size * size, 4), dtype=np.uint8)
    rgba[:, :3] = gray.reshape(-1, 1)
    rgba[:, 3] = 255
    return rgba.reshape(size, size, 4)


# =================================================================================
# SESSION
# =================================================================================
class GenerationState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Keyframe:
    step: int
    snapshot: np.ndarray


@dataclass(frozen=True)
class StepResult:
    state: GenerationState
    steps: int
    applied: int
    progress: float


@dataclass
class _Run:
    config: GeneratorConfig
    target: np.ndarray
    current: np.ndarray
    rgba: np.ndarray
    path: list = field(default_factory=lambda: [0])
    keyframes: list = field(default_factory=list)
    current_pin: int = 0
    next_pin: int = NO_PIN


class ThreadArtSession:
    """One generator: owns the buffers, the path, the keyframes and the line cache.

    Drive it with ``start(image)`` and then ``advance()`` from any scheduler
    (Tk ``after`` in the studio, a plain loop in :meth:`run`). ``on_progress``
    receives ``(fraction, message)``; ``store`` gets the exported payload under
    :data:`STORAGE_KEY` when a run finishes.
    """

    def __init__(self, config=None, store=None, on_progress=None):
        self.config = (config or GeneratorConfig()).validate()
        self.store = store
        self.on_progress = on_progress
        self.state = GenerationState.IDLE
        self.cache = LineCache()
        self._run = None
        self._result = None

    # --- read access ---
    @property
    def path(self):
        return list(self._run.path) if self._run else []

    @property
    def steps(self):
        return len(self._run.path) - 1 if self._run else 0

    @property
    def current(self):
        return self._run.current if self._run else None

    @property
    def target(self):
        return self._run.target if self._run else None

    @property
    def rgba(self):
        return self._run.rgba if self._run else None

    @property
    def keyframes(self):
        return list(self._run.keyframes) if self._run else []

    # --- lifecycle ---
    def start(self, image, config=None):
        if self.state is GenerationState.RUNNING:
            raise RuntimeError("Generation is already running; stop it first")
        config = (config or self.config).validate()
        target = build_target(image, config.solve_size)

        self.config = config
        self._result = None
        self.cache.configure(config.solve_size, config.pins, config.thickness)
        size = config.solve_size
        current = np.full(size * size, 255, dtype=np.uint8)
        run = _Run(config=config, target=target, current=current, rgba=gray_to_rgba(current, size))
        run.keyframes.append(Keyframe(0, current.copy()))
        self._run = run
        self.state = GenerationState.RUNNING
        logger.info(
            "Generation started: size=%d pins=%d threads=%d thickness=%d cooldown=%d",
            size, config.pins, config.threads, config.thickness, config.effective_cooldown,
        )
        self._report(0.0, "Generating…")
        run.next_pin = self.next_pin_index(run.current_pin)

    def stop(self):
        if self.state is not GenerationState.RUNNING:
            return False
        self.state = GenerationState.STOPPED
        logger.info("Generation stopped at step %d", self.steps)
        self._report(self._fraction(), "Stopped.")
        return True

    def advance(self, max_steps=None):
        """Run at most ``max_steps`` steps (default: one quantum)."""
        if max_steps is None:
            max_steps = self.config.steps_per_quantum
        applied = 0
        run = self._run
        while self.state is GenerationState.RUNNING and applied < max_steps:
            if len(run.path) - 1 >= run.config.threads or run.next_pin == NO_PIN:
                self._finish()
                break
            self._step()
            applied += 1
        return StepResult(self.state, self.steps, applied, self._fraction())

    def run(self):
        result = StepResult(self.state, self.steps, 0, self._fraction())
        while self.state is GenerationState.RUNNING:
            result = self.advance()
        return result

    def _step(self):
        run = self._run
        cfg = run.config
        frm, to = run.current_pin, run.next_pin
        run.path.append(to)
        self.apply_thread(frm, to)

        step = len(run.path) - 1
        if step % cfg.key_every == 0:
            run.keyframes.append(Keyframe(step, run.current.copy()))
            logger.debug("Keyframe captured at step %d", step)
        if step % cfg.progress_every == 0:
            self._report(self._fraction(), f"Generating… {step}/{cfg.threads} threads")

        run.current_pin = to
        run.next_pin = self.next_pin_index(to)

    def _finish(self):
        self.state = GenerationState.FINISHED
        self._result = self._payload()
        threads = self._result["threads"]
        logger.info("Generation finished with %d threads", threads)
        if self.store is not None:
            try:
                self.store.set_json(STORAGE_KEY, self._result)
            except (OSError, ValueError) as e:
                logger.warning("Could not persist the result: %s", e)
        self._report(1.0, f"Done. Threads: {threads}. Use the slider to step through.")

    def _fraction(self):
        if self._run is None:
            return 0.0
        if self.state is GenerationState.FINISHED:
            return 1.0
        budget = self._run.config.threads
        return min(1.0, self.steps / budget) if budget else 1.0

    def _report(self, fraction, message):
        if self.on_progress is not None:
            self.on_progress(fraction, message)

    # --- scoring and drawing ---
    def _pixel_gains(self, idx=None):
        """Squared-error drop per pixel still brighter than the target."""
        run = self._run
        c = run.current if idx is None else run.current[idx]
        t = run.target if idx is None else run.target[idx]
        c, t = c.astype(np.int64), t.astype(np.int64)
        mask = c > t
        c, t = c[mask], t[mask]
        c2 = np.maximum(c - (run.config.darken * c) // 255, 0)
        return (c - t) ** 2 - (c2 - t) ** 2

    def line_gain(self, a, b):
        return int(np.sum(self._pixel_gains(self.cache.get(a, b))))

    def can_improve(self):
        """True while some pixel anywhere would still get closer to its target."""
        return bool(np.any(self._pixel_gains() > 0))

    def next_pin_index(self, current_pin):
        run = self._run
        cooldown = run.config.effective_cooldown
        recent = set(run.path[-cooldown:]) if cooldown > 0 else set()
        best_pin, best_gain = NO_PIN, None
        for j in range(run.config.pins):
            if j == current_pin or j in recent:
                continue
            g = self.line_gain(current_pin, j)
            if best_gain is None or g > best_gain:
                best_pin, best_gain = j, g
        # zero gain here only ends the run once no pixel anywhere can improve
        if (run.config.stop_when_saturated and best_gain is not None and best_gain <= 0
                and not self.can_improve()):
            return NO_PIN
        return best_pin

    def apply_thread(self, a, b):
        run = self._run
        idx = self.cache.get(a, b)
        new = darken_values(run.current[idx], run.config.darken)
        run.current[idx] = new
        flat = run.rgba.reshape(-1, 4)
        flat[idx, :3] = new[:, None]
        flat[idx, 3] = 255

    # --- replay ---
    def find_keyframe(self, step):
        frames = self._require_run().keyframes
        i = bisect.bisect_right([k.step for k in frames], step) - 1
        return frames[max(i, 0)]

    def reconstruct_gray(self, step):
        run = self._require_run()
        step = max(0, min(int(step), len(run.path) - 1))
        kf = self.find_keyframe(step)
        gray = kf.snapshot.copy()
        darken = run.config.darken
        for t in range(kf.step, step):
            idx = self.cache.get(run.path[t], run.path[t + 1])
            gray[idx] = darken_values(gray[idx], darken)
        return gray

    def render_at_step(self, step):
        """RGBA image array (size, size, 4) showing the drawing after ``step`` threads."""
        size = self._require_run().config.solve_size
        return gray_to_rgba(self.reconstruct_gray(step), size)

    def _require_run(self):
        if self._run is None:
            raise RuntimeError("No generation has been started")
        return self._run

    # --- export ---
    def _payload(self):
        run = self._run
        cfg = run.config
        return {
            "pins": cfg.pins,
            "threads": len(run.path) - 1,
            "solveSize": cfg.solve_size,
            "thickness": cfg.thickness,
            "darken": cfg.darken,
            "cooldown": cfg.effective_cooldown,
            "path": list(run.path),
        }

    def export_result(self):
        if self.state is not GenerationState.FINISHED or self._result is None:
            raise RuntimeError("There is no finished generation to export")
        return dict(self._result, path=list(self._result["path"]))
