import argparse
import json
import logging
import sys
import tkinter as tk
from tkinter import filedialog, messagebox, ttk

from PIL import Image, ImageOps, ImageTk

from threadart_engine import (
    STORAGE_KEY,
    GenerationState,
    GeneratorConfig,
    ThreadArtSession,
    load_image,
)
from threadart_player import (
    PLAY_INTERVAL_MS,
    CoalescingRenderer,
    PlayerState,
    clamp_canvas_size,
    format_payload,
    load_payload_file,
    normalize_payload,
    render_player_image,
    save_payload,
    wheel_delta,
    zoomed_canvas_size,
)
from threadart_store import KeyValueStore

logger = logging.getLogger(__name__)

PANEL_BG = "#f5f5f5"
PREVIEW_SIZE = 640
MINIATURE_SIZE = 300
PREVIEW_EVERY = 5  # quanta between live preview refreshes
STORE_POLL_MS = 500
FILE_TYPES = [("JSON", "*.json"), ("TXT", "*.txt"), ("CSV", "*.csv")]


def setup_logging(level=logging.INFO, log_file=None):
    """Configure the root logger: stdout always, plus ``log_file`` when given."""
    root = logging.getLogger()
    root.setLevel(level)
    if root.hasHandlers():
        root.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logger.debug("Logging initialized.")


# =================================================================================
# UI: SCROLLING SIDE PANEL
# =================================================================================
class ScrollableFrame(tk.Frame):
    def __init__(self, container, *args, **kwargs):
        super().__init__(container, *args, **kwargs)
        self.canvas = tk.Canvas(self, borderwidth=0, background=PANEL_BG)
        self.view = tk.Frame(self.canvas, background=PANEL_BG)
        self.vsb = tk.Scrollbar(self, orient="vertical", command=self.canvas.yview)

        self.canvas.configure(yscrollcommand=self.vsb.set)
        self.vsb.pack(side="right", fill="y")
        self.canvas.pack(side="left", fill="both", expand=True)

        self.canvas_window = self.canvas.create_window((4, 4), window=self.view, anchor="nw")
        self.view.bind("<Configure>", lambda e: self.canvas.configure(scrollregion=self.canvas.bbox("all")))
        self.canvas.bind("<Configure>", lambda e: self.canvas.itemconfig(self.canvas_window, width=e.width))
        self.canvas.bind("<Enter>", self._bind_wheel)
        self.canvas.bind("<Leave>", self._unbind_wheel)

    def _bind_wheel(self, event):
        self.canvas.bind_all("<MouseWheel>", self._on_mousewheel)
        self.canvas.bind_all("<Button-4>", lambda e: self.canvas.yview_scroll(-1, "units"))
        self.canvas.bind_all("<Button-5>", lambda e: self.canvas.yview_scroll(1, "units"))

    def _unbind_wheel(self, event):
        for seq in ("<MouseWheel>", "<Button-4>", "<Button-5>"):
            self.canvas.unbind_all(seq)

    def _on_mousewheel(self, event):
        self.canvas.yview_scroll(int(-1 * (event.delta / 120)), "units")


# =================================================================================
# PLAYER WINDOW
# =================================================================================
class InstructionPlayer(tk.Toplevel):
    """Steps through a saved path, reloading whenever the shared store changes."""

    def __init__(self, master, store, title="Thread path player"):
        super().__init__(master)
        self.title(title)
        self.geometry("980x1000")

        # own store instance so writes from the studio in this process are seen by poll()
        self.store = KeyValueStore(store.path)
        self.player = PlayerState()
        self.canvas_size = clamp_canvas_size(None)
        self.play_id = None
        self.poll_id = None
        self.tk_img = None
        self.renderer = CoalescingRenderer(lambda fn: self.after_idle(fn), self._render)

        self.show_pins_var = tk.BooleanVar(value=True)
        self.show_history_var = tk.BooleanVar(value=True)
        self.slider_var = tk.IntVar(value=1)
        self.step_text = tk.StringVar(value="Step: 0 / 0")
        self.move_text = tk.StringVar(value="Pin ? → ?")

        self._init_ui()
        self.store.watch(STORAGE_KEY, self._on_store_update)
        self.protocol("WM_DELETE_WINDOW", self.close)
        self.bind("<Left>", lambda e: self.prev_step())
        self.bind("<Right>", lambda e: self.next_step())

        if not self._auto_load():
            self.step_text.set("No saved build found. Open or paste JSON.")
        self.poll_id = self.after(STORE_POLL_MS, self._poll_store)

    def _init_ui(self):
        control = tk.Frame(self, padx=10, pady=10, bg="#eee")
        control.pack(side=tk.BOTTOM, fill=tk.X)

        info = tk.Frame(control, bg="#eee")
        info.pack(fill=tk.X)
        tk.Label(info, textvariable=self.step_text, bg="#eee", font=("Arial", 10, "bold")).pack(side=tk.LEFT)
        tk.Label(info, textvariable=self.move_text, bg="#eee", font=("Arial", 10)).pack(side=tk.RIGHT)

        self.slider = ttk.Scale(control, from_=1, to=1, orient=tk.HORIZONTAL, variable=self.slider_var,
                                command=self.on_slider_move, state="disabled")
        self.slider.pack(fill=tk.X, padx=5, pady=5)

        btns = tk.Frame(control, bg="#eee")
        btns.pack(fill=tk.X)
        self.btn_prev = tk.Button(btns, text="◀ Prev", command=self.prev_step, width=8, state="disabled")
        self.btn_prev.pack(side=tk.LEFT, padx=3)
        self.btn_play = tk.Button(btns, text="Play", command=self.toggle_play, bg="#ccffcc", width=8, state="disabled")
        self.btn_play.pack(side=tk.LEFT, padx=3)
        self.btn_next = tk.Button(btns, text="Next ▶", command=self.next_step, width=8, state="disabled")
        self.btn_next.pack(side=tk.LEFT, padx=3)
        tk.Checkbutton(btns, text="Pins", variable=self.show_pins_var, command=self.request_render, bg="#eee").pack(side=tk.LEFT, padx=10)
        tk.Checkbutton(btns, text="History", variable=self.show_history_var, command=self.request_render, bg="#eee").pack(side=tk.LEFT)
        tk.Button(btns, text="📂 Open file...", command=self.load_external_file).pack(side=tk.RIGHT, padx=3)
        tk.Button(btns, text="Load pasted JSON", command=self.load_pasted).pack(side=tk.RIGHT, padx=3)

        self.paste_box = tk.Text(control, height=4)
        self.paste_box.pack(fill=tk.X, pady=(6, 0))

        view = tk.Frame(self, bg="white")
        view.pack(fill=tk.BOTH, expand=True)
        self.canvas = tk.Canvas(view, bg="white", highlightthickness=0,
                                scrollregion=(0, 0, self.canvas_size, self.canvas_size))
        self.canvas.pack(fill=tk.BOTH, expand=True)
        for seq in ("<MouseWheel>", "<Button-4>", "<Button-5>"):
            self.canvas.bind(seq, self._on_zoom)
        self.canvas.bind("<ButtonPress-1>", lambda e: self.canvas.scan_mark(e.x, e.y))
        self.canvas.bind("<B1-Motion>", lambda e: self.canvas.scan_dragto(e.x, e.y, gain=1))

    # --- loading ---
    def load(self, obj, source=""):
        """Validate and show ``obj``; on error the current build stays on screen."""
        try:
            data = self.player.load(obj)
        except ValueError as e:
            logger.warning("Rejected payload from %s: %s", source or "input", e)
            messagebox.showerror("Invalid data", str(e), parent=self)
            return False
        self.slider.config(from_=1, to=max(1, data.total_steps), state="normal")
        self.slider_var.set(1)
        for b in (self.btn_prev, self.btn_next, self.btn_play):
            b.config(state="normal")
        self.request_render()
        try:
            self.store.set_json(STORAGE_KEY, data.to_payload())
        except OSError as e:
            logger.warning("Could not save player data: %s", e)
        return True

    def _auto_load(self):
        raw = self.store.get(STORAGE_KEY)
        if not raw:
            return False
        try:
            obj = json.loads(raw)
            normalize_payload(obj)
        except ValueError as e:
            logger.warning("Invalid stored %s, removing it: %s", STORAGE_KEY, e)
            self.store.remove(STORAGE_KEY)
            return False
        return self.load(obj, "store")

    def _on_store_update(self, value):
        if not value:
            return
        try:
            obj = json.loads(value)
        except ValueError as e:
            logger.warning("Ignoring unreadable store update: %s", e)
            return
        self.pause()
        self.load(obj, "store (updated)")

    def _poll_store(self):
        self.store.poll()
        self.poll_id = self.after(STORE_POLL_MS, self._poll_store)

    def load_external_file(self):
        path = filedialog.askopenfilename(parent=self, filetypes=FILE_TYPES)
        if not path:
            return
        self.pause()
        try:
            obj = load_payload_file(path)
        except (OSError, ValueError) as e:
            messagebox.showerror("Invalid file", str(e), parent=self)
            return
        self.load(obj, path)

    def load_pasted(self):
        self.pause()
        try:
            obj = json.loads(self.paste_box.get("1.0", tk.END))
        except ValueError as e:
            messagebox.showerror("Invalid pasted JSON", str(e), parent=self)
            return
        self.load(obj, "pasted text")

    # --- navigation ---
    def on_slider_move(self, val):
        self.player.set_step(int(float(val)))
        self.request_render()

    def prev_step(self):
        self.slider_var.set(self.player.prev_step())
        self.request_render()

    def next_step(self):
        self.slider_var.set(self.player.next_step())
        self.request_render()

    def toggle_play(self):
        if self.play_id is not None:
            self.pause()
            return
        if not self.player.loaded:
            return
        self.btn_play.config(text="Pause", bg="#ffcccc")
        self.play_id = self.after(PLAY_INTERVAL_MS, self._play_tick)

    def _play_tick(self):
        self.slider_var.set(self.player.play_tick())
        self.request_render()
        self.play_id = self.after(PLAY_INTERVAL_MS, self._play_tick)

    def pause(self):
        if self.play_id is not None:
            self.after_cancel(self.play_id)
            self.play_id = None
        self.btn_play.config(text="Play", bg="#ccffcc")

    def _on_zoom(self, event):
        if not self.player.loaded:
            return
        self.pause()
        new_size = zoomed_canvas_size(self.canvas_size, wheel_delta(event))
        if new_size != self.canvas_size:
            self.canvas_size = new_size
            self.canvas.config(scrollregion=(0, 0, new_size, new_size))
            self.request_render()

    # --- drawing ---
    def request_render(self):
        if self.player.loaded:
            self.renderer.request(self.player.step)

    def _render(self, step):
        if not self.player.loaded:
            return
        step_text, move_text = self.player.describe()
        self.step_text.set(step_text)
        self.move_text.set(move_text)
        img = render_player_image(self.player.data, step, self.canvas_size,
                                  show_pins=self.show_pins_var.get(),
                                  show_history=self.show_history_var.get())
        self.tk_img = ImageTk.PhotoImage(img)
        self.canvas.delete("all")
        self.canvas.create_image(0, 0, image=self.tk_img, anchor="nw")

    def close(self):
        self.pause()
        if self.poll_id is not None:
            self.after_cancel(self.poll_id)
            self.poll_id = None
        self.destroy()


# =================================================================================
# MAIN APPLICATION
# =================================================================================
class ThreadArtApp:
    def __init__(self, root, store, config=None):
        self.root = root
        self.root.title("Thread Art Studio")
        self.root.geometry("1200x900")

        self.store = store
        self.session = ThreadArtSession(config, store=store, on_progress=self._on_progress)
        self.original_image = None
        self.tick_id = None
        self.quanta = 0
        self.tk_preview = None
        self.tk_miniature = None

        cfg = self.session.config
        self.solve_size_var = tk.IntVar(value=cfg.solve_size)
        self.pins_var = tk.IntVar(value=cfg.pins)
        self.threads_var = tk.IntVar(value=cfg.threads)
        self.thickness_var = tk.IntVar(value=cfg.thickness)
        self.step_var = tk.IntVar(value=0)
        self.status_var = tk.StringVar(value="Upload an image to begin.")

        self.renderer = CoalescingRenderer(lambda fn: self.root.after_idle(fn), self._render_step)
        self._init_ui()
        self._set_buttons(generating=False)

    def _init_ui(self):
        left_container = tk.Frame(self.root, width=380, bg=PANEL_BG)
        left_container.pack(side=tk.LEFT, fill=tk.Y)
        left_container.pack_propagate(False)
        self.scroll_frame = ScrollableFrame(left_container)
        self.scroll_frame.pack(fill="both", expand=True)
        content = self.scroll_frame.view

        self._add_header(content, "1. Source image")
        tk.Button(content, text="📂 Load image", command=self.load_image, bg="#e1e1e1", height=2).pack(fill=tk.X, padx=10, pady=2)
        self.miniature_lbl = tk.Label(content, bg="white", relief="sunken")
        self.miniature_lbl.pack(pady=5, padx=10)

        self._add_header(content, "2. Settings")
        self._add_int_field(content, "Solve size (px):", self.solve_size_var)
        self._add_int_field(content, "Pins:", self.pins_var)
        self._add_int_field(content, "Threads:", self.threads_var)
        self._add_int_field(content, "Thickness radius:", self.thickness_var)

        self._add_header(content, "3. Generate")
        f_gen = tk.Frame(content, bg=PANEL_BG)
        f_gen.pack(fill=tk.X, padx=10)
        self.btn_generate = tk.Button(f_gen, text="🚀 Generate", command=self.start_generation, bg="#b3e5fc", width=15)
        self.btn_generate.pack(side=tk.LEFT, padx=2)
        self.btn_stop = tk.Button(f_gen, text="⛔ Stop", command=self.stop_generation, bg="#ffccbc", width=15)
        self.btn_stop.pack(side=tk.RIGHT, padx=2)

        tk.Label(content, text="Progress:", bg=PANEL_BG).pack(padx=10, pady=(5, 0), anchor="w")
        self.progress = ttk.Progressbar(content, orient="horizontal", length=100, mode="determinate")
        self.progress.pack(fill=tk.X, padx=10, pady=2)
        tk.Label(content, textvariable=self.status_var, fg="blue", wraplength=330, bg=PANEL_BG).pack(pady=10)

        self._add_header(content, "4. Step through")
        self.step_scale = ttk.Scale(content, from_=0, to=0, orient=tk.HORIZONTAL, variable=self.step_var,
                                    command=self.on_step_move, state="disabled")
        self.step_scale.pack(fill=tk.X, padx=10)
        self.step_lbl = tk.Label(content, text="Step: 0", bg=PANEL_BG)
        self.step_lbl.pack(anchor="w", padx=10)

        self._add_header(content, "5. Result")
        self.path_out = tk.Text(content, height=10, width=40)
        self.path_out.pack(fill=tk.X, padx=10)
        f_exp = tk.Frame(content, bg=PANEL_BG)
        f_exp.pack(fill=tk.X, padx=10, pady=5)
        self.btn_copy = tk.Button(f_exp, text="📋 Copy", command=self.copy_result)
        self.btn_copy.pack(side=tk.LEFT, fill=tk.X, expand=True, padx=1)
        self.btn_save = tk.Button(f_exp, text="💾 Save", command=self.save_result)
        self.btn_save.pack(side=tk.LEFT, fill=tk.X, expand=True, padx=1)
        tk.Button(f_exp, text="👁 Player", command=self.open_player_window).pack(side=tk.RIGHT, fill=tk.X, expand=True, padx=1)

        right_panel = tk.Frame(self.root, bg="#333")
        right_panel.pack(side=tk.RIGHT, fill=tk.BOTH, expand=True)
        self.canvas = tk.Canvas(right_panel, width=PREVIEW_SIZE, height=PREVIEW_SIZE, bg="white", highlightthickness=0)
        self.canvas.pack(expand=True)

    # --- UI helpers ---
    def _add_header(self, parent, text):
        tk.Label(parent, text=text, font=("Arial", 11, "bold"), bg="#ddd", anchor="w", padx=5).pack(fill=tk.X, pady=(15, 5))

    def _add_int_field(self, parent, label, var):
        f = tk.Frame(parent, bg=PANEL_BG)
        f.pack(fill=tk.X, padx=10, pady=1)
        tk.Label(f, text=label, bg=PANEL_BG).pack(side=tk.LEFT)
        tk.Entry(f, textvariable=var, width=8).pack(side=tk.RIGHT)

    def _set_buttons(self, generating):
        has_image = self.original_image is not None
        finished = self.session.state is GenerationState.FINISHED
        self.btn_generate.config(state="disabled" if generating or not has_image else "normal")
        self.btn_stop.config(state="normal" if generating else "disabled")
        for b in (self.btn_copy, self.btn_save):
            b.config(state="normal" if finished and not generating else "disabled")

    def _on_progress(self, fraction, message):
        self.progress['value'] = fraction * 100
        self.status_var.set(message)

    def _show_buffer(self, rgba):
        img = Image.fromarray(rgba).resize((PREVIEW_SIZE, PREVIEW_SIZE), Image.Resampling.BILINEAR)
        self.tk_preview = ImageTk.PhotoImage(img)
        self.canvas.delete("all")
        self.canvas.create_image(0, 0, image=self.tk_preview, anchor="nw")

    # --- actions ---
    def load_image(self):
        path = filedialog.askopenfilename(filetypes=[("Images", "*.jpg *.jpeg *.png *.bmp *.webp")])
        if not path:
            return
        try:
            img = load_image(path)
            img.load()
        except (OSError, ValueError) as e:
            messagebox.showerror("Error", str(e))
            return
        self.original_image = img
        thumb = ImageOps.fit(img.convert("RGB"), (MINIATURE_SIZE, MINIATURE_SIZE))
        self.tk_miniature = ImageTk.PhotoImage(thumb)
        self.miniature_lbl.config(image=self.tk_miniature)
        self.progress['value'] = 0
        self.status_var.set("Image loaded. Configure settings and click Generate.")
        self._set_buttons(generating=False)

    def _read_config(self):
        try:
            values = dict(
                solve_size=self.solve_size_var.get(),
                pins=self.pins_var.get(),
                threads=self.threads_var.get(),
                thickness=self.thickness_var.get(),
            )
        except tk.TclError as e:
            raise ValueError(f"Settings must be whole numbers ({e})") from e
        return self.session.config.with_overrides(**values)

    def start_generation(self):
        if self.original_image is None or self.session.state is GenerationState.RUNNING:
            return
        try:
            config = self._read_config()
            self.session.start(self.original_image, config)
        except ValueError as e:
            messagebox.showerror("Invalid settings", str(e))
            return

        self.path_out.delete("1.0", tk.END)
        self.step_scale.config(state="disabled")
        self.quanta = 0
        self._set_buttons(generating=True)
        self._show_buffer(self.session.rgba)
        self.tick_id = self.root.after(1, self._tick)

    def _tick(self):
        self.tick_id = None
        if self.session.state is not GenerationState.RUNNING:
            return
        result = self.session.advance()
        self.quanta += 1
        if result.state is GenerationState.RUNNING:
            if self.quanta % PREVIEW_EVERY == 0:
                self._show_buffer(self.session.rgba)
                self.root.update_idletasks()
            self.tick_id = self.root.after(1, self._tick)
        elif result.state is GenerationState.FINISHED:
            self._on_finished()

    def _on_finished(self):
        payload = self.session.export_result()
        self._show_buffer(self.session.rgba)
        self.path_out.delete("1.0", tk.END)
        self.path_out.insert("1.0", format_payload(payload, "json"))
        steps = payload["threads"]
        self.step_scale.config(from_=0, to=steps, state="normal" if steps else "disabled")
        self.step_var.set(steps)
        self.step_lbl.config(text=f"Step: {steps}/{steps}")
        self._set_buttons(generating=False)

    def stop_generation(self):
        if self.tick_id is not None:
            self.root.after_cancel(self.tick_id)
            self.tick_id = None
        self.session.stop()
        self._set_buttons(generating=False)

    def on_step_move(self, val):
        self.renderer.request(int(float(val)))

    def _render_step(self, step):
        if self.session.state is not GenerationState.FINISHED:
            return
        self.step_lbl.config(text=f"Step: {step}/{self.session.steps}")
        self._show_buffer(self.session.render_at_step(step))

    def copy_result(self):
        text = self.path_out.get("1.0", tk.END).strip()
        try:
            self.root.clipboard_clear()
            self.root.clipboard_append(text)
            self.root.update()
        except tk.TclError as e:
            logger.warning("Clipboard copy failed: %s", e)
            self.status_var.set("Copy failed. You can copy manually from the box.")
            return
        self.status_var.set("Copied path JSON to clipboard.")

    def save_result(self):
        try:
            payload = self.session.export_result()
        except RuntimeError as e:
            self.status_var.set(str(e))
            return
        path = filedialog.asksaveasfilename(defaultextension=".json", initialfile="thread_art_path.json",
                                            filetypes=FILE_TYPES)
        if not path:
            return
        try:
            save_payload(payload, path)
        except (OSError, ValueError) as e:
            logger.warning("Saving %s failed: %s", path, e)
            self.status_var.set(f"Save failed ({e}). The JSON is still in the box.")
            return
        self.status_var.set(f"Saved to {path}")

    def open_player_window(self):
        InstructionPlayer(self.root, self.store)


# =================================================================================
# COMMAND LINE
# =================================================================================
def build_parser():
    parser = argparse.ArgumentParser(description="Turn an image into a thread-art pin sequence.")
    parser.add_argument("--headless", metavar="IMAGE", help="generate from IMAGE without opening a window")
    parser.add_argument("--out", help="where --headless writes the result (.json, .txt or .csv); default stdout")
    parser.add_argument("--player", action="store_true", help="open only the player window")
    parser.add_argument("--store", help="path of the shared store file")
    parser.add_argument("--solve-size", type=int)
    parser.add_argument("--pins", type=int)
    parser.add_argument("--threads", type=int)
    parser.add_argument("--thickness", type=int)
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file")
    return parser


def run_headless(image_path, config, store, out=None):
    def report(fraction, message):
        logger.info("%3.0f%% %s", fraction * 100, message)

    session = ThreadArtSession(config, store=store, on_progress=report)
    session.start(load_image(image_path))
    session.run()
    payload = session.export_result()
    if out:
        save_payload(payload, out)
    else:
        sys.stdout.write(format_payload(payload, "json") + "\n")
    return payload


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(getattr(logging, args.log_level), args.log_file)

    try:
        config = GeneratorConfig().with_overrides(
            solve_size=args.solve_size,
            pins=args.pins,
            threads=args.threads,
            thickness=args.thickness,
        )
    except ValueError as e:
        logger.error("%s", e)
        return 2
    store = KeyValueStore(args.store)

    if args.headless:
        try:
            run_headless(args.headless, config, store, args.out)
        except (OSError, ValueError) as e:
            logger.error("Generation failed: %s", e)
            return 1
        return 0

    root = tk.Tk()
    if args.player:
        root.withdraw()
        player = InstructionPlayer(root, store)

        def close_all():
            player.close()
            root.destroy()
        player.protocol("WM_DELETE_WINDOW", close_all)
    else:
        ThreadArtApp(root, store, config)
    root.mainloop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
