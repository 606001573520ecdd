"""Step-by-step player for finished thread paths.

Nothing here touches Tk: the studio window only forwards clicks to PlayerState
and shows the images rendered by render_player_image.
"""
import csv
import io
import json
import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)

MIN_CANVAS = 300
MAX_CANVAS = 2000
DEFAULT_CANVAS = 900
PIN_MARGIN = 24
PLAY_INTERVAL_MS = 40
ZOOM_SENSITIVITY = 0.0015

HISTORY_COLOR = (0, 0, 0, 30)
GLOW_COLOR = (255, 255, 255, 242)
HIGHLIGHT_COLOR = (99, 102, 241, 242)
FROM_PIN_COLOR = (16, 185, 129, 242)
PIN_COLOR = (0, 0, 0, 140)
RING_COLOR = (0, 0, 0, 20)


# =================================================================================
# PAYLOAD VALIDATION
# =================================================================================
@dataclass(frozen=True)
class PlayerData:
    pins: int
    path: tuple
    threads: int
    thickness: object = None
    solve_size: object = None
    display_size: object = None
    darken: object = None
    cooldown: object = None
    meta: object = None

    @property
    def total_steps(self):
        return max(0, len(self.path) - 1)

    def to_payload(self):
        return {
            "pins": self.pins,
            "threads": self.threads,
            "solveSize": self.solve_size,
            "thickness": self.thickness,
            "darken": self.darken,
            "cooldown": self.cooldown,
            "displaySize": self.display_size,
            "meta": self.meta,
            "path": list(self.path),
        }


def _is_number(x):
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


def normalize_payload(obj):
    """Validate a loaded payload and return PlayerData; raises ValueError."""
    if not isinstance(obj, dict):
        raise ValueError("Data is not an object.")
    raw_path = obj.get("path")
    if not isinstance(raw_path, list):
        raise ValueError("Missing path[] array.")
    if not _is_number(obj.get("pins")):
        raise ValueError("Missing pins count.")

    pin_count = int(obj["pins"])
    path = []
    for i, x in enumerate(raw_path):
        if not _is_number(x):
            raise ValueError(f"path[{i}] is not a number: {x!r}")
        path.append(int(x))

    if pin_count < 3:
        raise ValueError("pins must be >= 3.")
    if len(path) < 2:
        raise ValueError("path is too short.")
    for i, p in enumerate(path):
        if p < 0 or p >= pin_count:
            raise ValueError(f"path[{i}] out of range: {p} (pins={pin_count})")

    threads = obj.get("threads")
    threads = int(threads) if _is_number(threads) else len(path) - 1
    return PlayerData(
        pins=pin_count,
        path=tuple(path),
        threads=threads,
        thickness=obj.get("thickness"),
        solve_size=obj.get("solveSize"),
        display_size=obj.get("displaySize"),
        darken=obj.get("darken"),
        cooldown=obj.get("cooldown"),
        meta=obj.get("meta"),
    )


# =================================================================================
# PLAYER STATE
# =================================================================================
class PlayerState:
    def __init__(self):
        self.data = None
        self.step = 1

    @property
    def loaded(self):
        return self.data is not None

    @property
    def total_steps(self):
        return self.data.total_steps if self.data else 0

    def load(self, obj):
        data = normalize_payload(obj)
        self.data = data
        self.step = 1
        logger.info("Player loaded %d pins, %d steps", data.pins, data.total_steps)
        return data

    def set_step(self, step):
        if not self.data:
            return self.step
        self.step = max(1, min(self.total_steps, int(step)))
        return self.step

    def next_step(self):
        return self.set_step(self.step + 1)

    def prev_step(self):
        return self.set_step(self.step - 1)

    def play_tick(self):
        if not self.data:
            return self.step
        step = self.step + 1
        if step > self.total_steps:
            step = 1
        return self.set_step(step)

    def current_move(self):
        if not self.data:
            return None
        return self.data.path[self.step - 1], self.data.path[self.step]

    def describe(self):
        if not self.data:
            return "Step: 0 / 0", "Pin ? → ?"
        a, b = self.current_move()
        return f"Step: {self.step} / {self.total_steps}", f"Pin {a} → {b}"


class CoalescingRenderer:
    """Render only the most recent requested step.

    ``schedule(fn)`` hands ``fn`` to the host loop (Tk ``after_idle``). Requests
    arriving before it runs overwrite each other.
    """

    def __init__(self, schedule, render):
        self._schedule = schedule
        self._render = render
        self._pending = None
        self._scheduled = False

    @property
    def pending(self):
        return self._pending

    def request(self, step):
        self._pending = step
        if not self._scheduled:
            self._scheduled = True
            self._schedule(self._flush)

    def _flush(self):
        step = self._pending
        self._pending = None
        self._scheduled = False
        if step is not None:
            self._render(step)


# =================================================================================
# DRAWING
# =================================================================================
def clamp_canvas_size(px):
    try:
        n = round(float(px))
    except (TypeError, ValueError):
        n = 0
    return max(MIN_CANVAS, min(MAX_CANVAS, n or DEFAULT_CANVAS))


def wheel_delta(event):
    """Wheel rotation as a Windows/macOS style delta; X11 reports buttons 4 and 5."""
    num = getattr(event, "num", None)
    if num == 4:
        return 120
    if num == 5:
        return -120
    return getattr(event, "delta", 0) or 0


def zoomed_canvas_size(size, delta):
    return clamp_canvas_size(size * (1 + delta * ZOOM_SENSITIVITY))


def player_pin_positions(pin_count, canvas_size, margin=PIN_MARGIN):
    r = canvas_size / 2 - margin
    out = []
    for i in range(pin_count):
        a = 2 * math.pi * i / pin_count
        out.append((r + r * math.cos(a) + margin, r - r * math.sin(a) + margin))
    return out


def _dot(draw, xy, radius, fill):
    x, y = xy
    draw.ellipse((x - radius, y - radius, x + radius, y + radius), fill=fill)


def _label(draw, xy, text, fill, canvas_size):
    x, y = xy
    dx = 12 if x < canvas_size / 2 else -20
    dy = 20 if y < canvas_size / 2 else -12
    # bitmap default font, so no anchor: shift up by half a line instead
    draw.text((x + dx, y + dy - 5), text, fill=fill)


def render_player_image(data, step, canvas_size=DEFAULT_CANVAS, show_pins=True, show_history=True):
    img = Image.new("RGB", (canvas_size, canvas_size), "white")
    draw = ImageDraw.Draw(img, "RGBA")
    pts = player_pin_positions(data.pins, canvas_size)

    c = canvas_size / 2
    rr = (canvas_size - PIN_MARGIN * 2) * 0.48
    draw.ellipse((c - rr, c - rr, c + rr, c + rr), outline=RING_COLOR, width=2)

    step = max(1, min(data.total_steps, int(step)))
    if show_history and step > 1:
        history = [pts[p] for p in data.path[:step]]
        draw.line(history, fill=HISTORY_COLOR, width=1)

    a, b = data.path[step - 1], data.path[step]
    draw.line([pts[a], pts[b]], fill=GLOW_COLOR, width=7)
    draw.line([pts[a], pts[b]], fill=HIGHLIGHT_COLOR, width=3)
    _dot(draw, pts[a], 9, FROM_PIN_COLOR)
    _dot(draw, pts[b], 9, HIGHLIGHT_COLOR)
    _label(draw, pts[a], str(a), FROM_PIN_COLOR, canvas_size)
    _label(draw, pts[b], str(b), HIGHLIGHT_COLOR, canvas_size)

    if show_pins:
        for xy in pts:
            _dot(draw, xy, 4, PIN_COLOR)
    return img


# =================================================================================
# INSTRUCTION FILES
# =================================================================================
TXT_ROW = 10
CSV_ROW = 20


def format_payload(payload, fmt):
    fmt = fmt.lower().lstrip(".")
    path = payload["path"]
    if fmt == "json":
        return json.dumps(payload, indent=2)
    if fmt == "txt":
        lines = [f"Pins: {payload['pins']}"]
        for i in range(0, len(path), TXT_ROW):
            lines.append(" - ".join(map(str, path[i:i + TXT_ROW])))
        return "\n".join(lines) + "\n"
    if fmt == "csv":
        buf = io.StringIO()
        w = csv.writer(buf, lineterminator="\n")
        w.writerow(["pins", payload["pins"]])
        for i in range(0, len(path), CSV_ROW):
            w.writerow(path[i:i + CSV_ROW])
        return buf.getvalue()
    raise ValueError(f"Unknown instruction format: {fmt!r}")


def parse_payload(text, fmt):
    """Parse JSON, TXT or CSV instructions into a payload dict (not yet validated)."""
    fmt = fmt.lower().lstrip(".")
    if fmt == "json":
        return json.loads(text)
    if fmt == "txt":
        pins = None
        seq = []
        for line in text.splitlines():
            m = re.match(r"\s*Pins:\s*(\d+)", line, re.IGNORECASE)
            if m:
                pins = int(m.group(1))
                continue
            seq.extend(int(s) for s in re.findall(r"\b\d+\b", line))
        return {"pins": pins, "path": seq}
    if fmt == "csv":
        pins = None
        seq = []
        for row in csv.reader(io.StringIO(text)):
            if row and row[0].strip().lower() == "pins":
                if len(row) > 1 and row[1].strip().isdigit():
                    pins = int(row[1])
                continue
            seq.extend(int(c) for c in row if c.strip().isdigit())
        return {"pins": pins, "path": seq}
    raise ValueError(f"Unknown instruction format: {fmt!r}")


def save_payload(payload, path):
    path = Path(path)
    fmt = path.suffix or ".json"
    path.write_text(format_payload(payload, fmt), encoding="utf-8")
    logger.info("Saved %d-step path to %s", len(payload["path"]) - 1, path)


def load_payload_file(path):
    path = Path(path)
    return parse_payload(path.read_text(encoding="utf-8"), path.suffix or ".json")
