"""
Retro Sync
- Watches a source folder and mirrors created/modified files into a destination folder.
- Each change is handed to rsync (--archive --update --relative) for exactly that file.
- Optional whole-tree bootstrap sync before change processing begins.
- Removals and renames are never propagated: the destination only grows or updates.
- Filesystem events are debounced per path before dispatch.
- Optional gitignore-style patterns for paths that should not be mirrored.
- Styled console output on stderr, optional plain daily log file.

Usage
  pip install watchdog pathspec colorama
  RETRO_SAVES=/src RETRO_GAMES=/dst retro-sync
  retro-sync --source /src --dest /dst --bootstrap --ignore "*.tmp"
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import os
import queue
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePath
from typing import Callable, Mapping, Optional

from colorama import init as colorama_init
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

LOGGER_NAME = "retro_sync"

ENV_SOURCE = "RETRO_SAVES"
ENV_DEST = "RETRO_GAMES"
ENV_BOOTSTRAP = "RETRO_BOOTSTRAP"
ENV_LOG_DIR = "RETRO_LOG_DIR"
ENV_LOG_LEVEL = "RETRO_LOG_LEVEL"
ENV_DEBOUNCE = "RETRO_DEBOUNCE_SECS"
ENV_SYNC_TIMEOUT = "RETRO_SYNC_TIMEOUT"
ENV_RSYNC = "RETRO_RSYNC"
ENV_IGNORE = "RETRO_IGNORE"

DEFAULT_DEBOUNCE_SEC = 2.0
DEFAULT_RSYNC = "rsync"
DEFAULT_LIVENESS_POLL_SEC = 0.5

TRUTHY = {"1", "t", "true", "y", "yes"}

EXIT_OK = 0
EXIT_FATAL = 1


# -------------------------
# Errors
# -------------------------

class RetroSyncError(Exception):
    """Base class for fatal conditions; each one ends the process with EXIT_FATAL."""


class ConfigError(RetroSyncError, ValueError):
    pass


class WatchRegistrationError(RetroSyncError):
    pass


class ChannelClosedError(RetroSyncError):
    pass


class PathOutsideRootError(RetroSyncError, ValueError):
    def __init__(self, root, path):
        super().__init__(f"path is not under watch root {root}: {path}")
        self.root = str(root)
        self.path = str(path)


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "SYNC": Ansi.GREEN,
    "BOOTSTRAP": Ansi.LIGHT_BROWN,
    "WATCH": Ansi.LIGHT_BROWN,
    "SKIP": Ansi.WHITE,
    "FATAL": Ansi.RED,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (AttributeError, ValueError):
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "retro_sync") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


CONSOLE_HANDLER = "retro_sync.console"
FILE_HANDLER = "retro_sync.file"


def _own_handler(logger: logging.Logger, name: str) -> Optional[logging.Handler]:
    for h in logger.handlers:
        if h.get_name() == name:
            return h
    return None


def setup_logger(log_dir: Optional[Path] = None, level: str = "INFO") -> logging.Logger:
    """Install the console handler, plus the daily file handler when ``log_dir`` is set.

    Each is added once; handlers attached by anyone else are left alone.
    Raises ConfigError when ``log_dir`` cannot be used. The console handler
    is already in place at that point.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_parse_level(level))
    logger.propagate = False

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    if _own_handler(logger, CONSOLE_HANDLER) is None:
        colorama_init()
        ch = logging.StreamHandler(sys.stderr)
        ch.set_name(CONSOLE_HANDLER)
        ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stderr), fmt=fmt, datefmt=datefmt))
        logger.addHandler(ch)

    if log_dir is not None and _own_handler(logger, FILE_HANDLER) is None:
        log_dir = Path(log_dir).expanduser()
        log_path = log_dir / _today_log_name()
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_path, encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"log directory is not usable: {log_dir} | {e}") from e
        fh.set_name(FILE_HANDLER)
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def _parse_level(level: str) -> int:
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else Path(path).is_dir()
    logger.log(level, f"{action} | {message}", extra=extra)


def fatal(logger: logging.Logger, message: str) -> None:
    log_action(logger, "FATAL", message, level=logging.CRITICAL)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class WatchConfig:
    source_root: Path
    dest_root: Path
    bootstrap_enabled: bool = False
    log_dir: Optional[Path] = None
    debounce_sec: float = DEFAULT_DEBOUNCE_SEC
    sync_timeout_sec: Optional[float] = None
    rsync_bin: str = DEFAULT_RSYNC
    ignore_patterns: tuple[str, ...] = field(default_factory=tuple)


def parse_bool(raw: Optional[str]) -> bool:
    if raw is None:
        return False
    return raw.strip().lower() in TRUTHY


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mirror created/modified files from one folder to another with rsync.")
    p.add_argument("--source", type=str, default=None, help=f"Folder to watch (overrides ${ENV_SOURCE}).")
    p.add_argument("--dest", type=str, default=None, help=f"Folder to mirror into (overrides ${ENV_DEST}).")
    p.add_argument(
        "--bootstrap",
        action="store_true",
        default=None,
        help=f"Run one whole-tree sync before watching (overrides ${ENV_BOOTSTRAP}).",
    )
    p.add_argument("--log-dir", type=str, default=None, help="Directory for the daily log file.")
    p.add_argument("--log-level", type=str, default=None, help="Logging level (DEBUG, INFO, ...).")
    p.add_argument("--debounce", type=float, default=None, help="Seconds to coalesce events per path.")
    p.add_argument("--sync-timeout", type=float, default=None, help="Seconds before an rsync call is abandoned.")
    p.add_argument("--ignore", action="append", default=None, help="Gitignore-style pattern to skip (repeatable).")
    return p.parse_args(argv)


def _float_from(raw: Optional[str], name: str) -> Optional[float]:
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name}: not a number: {raw!r}") from None


def _require(env: Mapping[str, str], cli_value: Optional[str], name: str) -> Path:
    if cli_value:
        return Path(cli_value)
    raw = env.get(name)
    if not raw:
        raise ConfigError(f"{name}: environment variable not found")
    return Path(raw)


def build_config(args: argparse.Namespace, env: Mapping[str, str]) -> WatchConfig:
    source = _require(env, args.source, ENV_SOURCE)
    dest = _require(env, args.dest, ENV_DEST)

    bootstrap = args.bootstrap if args.bootstrap is not None else parse_bool(env.get(ENV_BOOTSTRAP))

    log_dir_raw = args.log_dir or env.get(ENV_LOG_DIR)
    log_dir = Path(log_dir_raw) if log_dir_raw else None

    debounce = args.debounce if args.debounce is not None else _float_from(env.get(ENV_DEBOUNCE), ENV_DEBOUNCE)
    if debounce is None:
        debounce = DEFAULT_DEBOUNCE_SEC
    if debounce < 0:
        raise ConfigError(f"debounce must not be negative: {debounce}")

    timeout = args.sync_timeout if args.sync_timeout is not None else _float_from(env.get(ENV_SYNC_TIMEOUT), ENV_SYNC_TIMEOUT)
    if timeout is not None and timeout <= 0:
        raise ConfigError(f"sync timeout must be positive: {timeout}")

    if args.ignore:
        patterns = tuple(args.ignore)
    else:
        patterns = tuple(p.strip() for p in env.get(ENV_IGNORE, "").split(",") if p.strip())

    return WatchConfig(
        source_root=source,
        dest_root=dest,
        bootstrap_enabled=bool(bootstrap),
        log_dir=log_dir,
        debounce_sec=float(debounce),
        sync_timeout_sec=timeout,
        rsync_bin=env.get(ENV_RSYNC) or DEFAULT_RSYNC,
        ignore_patterns=patterns,
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_config(config: WatchConfig) -> WatchConfig:
    """Check both roots and return a copy with them made absolute and resolved."""
    source = config.source_root.expanduser().resolve()
    dest = config.dest_root.expanduser().resolve()

    if not source.exists():
        raise ConfigError(f"source does not exist: {source}")
    if not source.is_dir():
        raise ConfigError(f"source is not a directory: {source}")
    if not dest.exists():
        raise ConfigError(f"destination does not exist: {dest}")
    if not dest.is_dir():
        raise ConfigError(f"destination is not a directory: {dest}")
    if source == dest:
        raise ConfigError("source and destination must be different")
    if _is_subpath(dest, source):
        raise ConfigError("destination must NOT be inside source (would cause loops)")
    if _is_subpath(source, dest):
        raise ConfigError("source must NOT be inside destination")

    return replace(config, source_root=source, dest_root=dest)


# -------------------------
# Paths + ignore
# -------------------------

def relativize(root, path) -> str:
    """Express ``path`` relative to ``root`` with ``/`` separators.

    Purely lexical: ``path`` may already be gone and symlinks are not
    followed. The root itself maps to ``""``. Raises PathOutsideRootError
    when ``path`` does not live under ``root``.
    """
    root_p = PurePath(os.path.normpath(os.path.abspath(os.fspath(root))))
    path_p = PurePath(os.path.normpath(os.path.abspath(os.fspath(path))))
    try:
        rel = path_p.relative_to(root_p)
    except ValueError:
        raise PathOutsideRootError(root, path) from None
    rel_posix = rel.as_posix()
    return "" if rel_posix == "." else rel_posix


class IgnoreMatcher:
    def __init__(self, patterns):
        self.patterns = tuple(patterns)
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def __bool__(self) -> bool:
        return bool(self.patterns)

    def is_ignored(self, rel_path: str, is_dir: bool = False) -> bool:
        if not rel_path:
            return False
        if is_dir and not rel_path.endswith("/"):
            rel_path += "/"
        return self.spec.match_file(rel_path)


# -------------------------
# Events
# -------------------------

class EventKind:
    CREATED = "created"
    WRITTEN = "written"
    REMOVED = "removed"
    RENAMED = "renamed"
    RESCAN = "rescan"
    ERROR = "error"
    OTHER = "other"


RELEVANT_KINDS = frozenset({EventKind.CREATED, EventKind.WRITTEN})


@dataclass(frozen=True)
class RawEvent:
    kind: str
    paths: tuple[str, ...]
    is_directory: bool = False


def classify(event: RawEvent) -> Optional[str]:
    """Return the path to mirror for a relevant event, or None when it is ignored."""
    if event.kind not in RELEVANT_KINDS:
        return None
    if len(event.paths) != 1:
        return None
    path = event.paths[0]
    if event.is_directory or os.path.isdir(path):
        return None
    return path


def coalesce(previous: Optional[str], kind: str) -> Optional[str]:
    """Merge a new event kind into the one pending for the same path.

    None means the two cancel out and nothing should be delivered.
    """
    if previous is None:
        return kind
    if previous == EventKind.CREATED and kind == EventKind.WRITTEN:
        return EventKind.CREATED
    if previous == EventKind.CREATED and kind == EventKind.REMOVED:
        return None
    if previous == EventKind.REMOVED and kind == EventKind.CREATED:
        return EventKind.WRITTEN
    return kind


_CLOSED = object()


class EventChannel:
    """Unbounded ordered channel between the watcher and the dispatch loop."""

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, event: RawEvent) -> None:
        if self._closed.is_set():
            return
        self._queue.put(event)

    def close(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._queue.put(_CLOSED)

    def next_event(self, timeout: Optional[float] = None) -> Optional[RawEvent]:
        """Block for the next event. Returns None once the channel is closed.

        Raises queue.Empty if ``timeout`` expires first.
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # keep the marker so every later receive also sees the close
            self._queue.put(_CLOSED)
            return None
        return item


class DebouncingHandler(FileSystemEventHandler):
    def __init__(self, channel: EventChannel, delay_sec: float = DEFAULT_DEBOUNCE_SEC):
        super().__init__()
        self.channel = channel
        self.delay_sec = max(0.0, float(delay_sec))
        self._pending: dict[str, RawEvent] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._guard = threading.Lock()

    def on_created(self, event):
        self._push(EventKind.CREATED, event.src_path, bool(event.is_directory))

    def on_modified(self, event):
        self._push(EventKind.WRITTEN, event.src_path, bool(event.is_directory))

    def on_deleted(self, event):
        self._push(EventKind.REMOVED, event.src_path, bool(event.is_directory))

    def on_moved(self, event):
        src = os.fsdecode(event.src_path)
        dest = os.fsdecode(event.dest_path)
        is_dir = bool(event.is_directory)
        with self._guard:
            prev = self._pending.pop(src, None)
            self._cancel_timer(src)
            if prev is not None and prev.kind in RELEVANT_KINDS:
                # write-to-temp-then-rename: the file just appeared under its final name
                self._merge_locked(prev.kind, dest, is_dir)
                return
            self._schedule_locked(dest, RawEvent(EventKind.RENAMED, (src, dest), is_dir))

    def _push(self, kind: str, path, is_dir: bool) -> None:
        path = os.fsdecode(path)
        with self._guard:
            self._merge_locked(kind, path, is_dir)

    # The *_locked helpers must be called with _guard held.

    def _merge_locked(self, kind: str, path: str, is_dir: bool) -> None:
        prev = self._pending.get(path)
        merged = coalesce(prev.kind if prev else None, kind)
        if merged is None:
            self._pending.pop(path, None)
            self._cancel_timer(path)
            return
        self._schedule_locked(path, RawEvent(merged, (path,), is_dir))

    def _schedule_locked(self, key: str, raw: RawEvent) -> None:
        self._pending[key] = raw
        self._cancel_timer(key)
        timer = threading.Timer(self.delay_sec, self._flush)
        timer.args = (key, timer)
        timer.daemon = True
        self._timers[key] = timer
        timer.start()

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _flush(self, key: str, timer: threading.Timer) -> None:
        with self._guard:
            # a timer that was replaced after it started running must not flush the newer event
            if self._timers.get(key) is not timer:
                return
            del self._timers[key]
            raw = self._pending.pop(key, None)
        if raw is not None:
            self.channel.put(raw)

    def cancel_all(self) -> None:
        with self._guard:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._pending.clear()


class ObserverEventSource:
    """Recursive watchdog observer feeding debounced events into an EventChannel."""

    def __init__(
        self,
        root: Path,
        delay_sec: float = DEFAULT_DEBOUNCE_SEC,
        logger: Optional[logging.Logger] = None,
        observer_factory: Callable = Observer,
        liveness_poll_sec: float = DEFAULT_LIVENESS_POLL_SEC,
    ):
        self.root = Path(root)
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.channel = EventChannel()
        self.handler = DebouncingHandler(self.channel, delay_sec)
        self.liveness_poll_sec = liveness_poll_sec
        self._observer_factory = observer_factory
        self._observer = None

    def start(self) -> None:
        observer = self._observer_factory()
        try:
            observer.schedule(self.handler, str(self.root), recursive=True)
            observer.start()
        except (OSError, RuntimeError) as e:
            raise WatchRegistrationError(f"cannot watch {self.root}: {e}") from e
        self._observer = observer
        log_action(self.logger, "WATCH", f"watching {self.root}", path=self.root, is_dir=True)

    def next_event(self, timeout: Optional[float] = None) -> Optional[RawEvent]:
        """Block for the next debounced event; None once the watch has ended.

        The watch also counts as ended when the observer thread or one of
        its emitters dies (for example when the watched root is removed).
        Raises queue.Empty if ``timeout`` expires first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = self.liveness_poll_sec
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - time.monotonic()))
            try:
                return self.channel.next_event(wait)
            except queue.Empty:
                if not self.channel.closed and not self.watch_alive():
                    log_action(self.logger, "WATCH", f"watch on {self.root} ended", path=self.root, is_dir=True, level=logging.ERROR)
                    self.handler.cancel_all()
                    self.channel.close()
                    continue
                if deadline is not None and time.monotonic() >= deadline:
                    raise

    def watch_alive(self) -> bool:
        observer = self._observer
        if observer is None:
            return True
        if not observer.is_alive():
            return False
        return all(emitter.is_alive() for emitter in observer.emitters)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=10)
            self._observer = None
        self.handler.cancel_all()
        self.channel.close()


# -------------------------
# rsync
# -------------------------

@dataclass(frozen=True)
class SyncResult:
    ok: bool
    diagnostic: str = ""


def build_rsync_command(rsync_bin: str, source_root, dest_root, rel_path: str) -> list[str]:
    # "/./" marks where --relative starts recreating the path under dest_root
    item = os.path.join(os.fspath(source_root), ".", rel_path)
    return [rsync_bin, "--archive", "--update", "--relative", item, os.fspath(dest_root)]


def _last_line(text: Optional[str]) -> str:
    lines = [ln.strip() for ln in (text or "").splitlines() if ln.strip()]
    return lines[-1] if lines else ""


class SyncInvoker:
    def __init__(
        self,
        logger: logging.Logger,
        rsync_bin: str = DEFAULT_RSYNC,
        timeout_sec: Optional[float] = None,
        runner: Callable = subprocess.run,
    ):
        self.logger = logger
        self.rsync_bin = rsync_bin
        self.timeout_sec = timeout_sec
        self.runner = runner

    def invoke(self, source_root, dest_root, rel_path: str) -> SyncResult:
        """Mirror ``source_root/rel_path`` into ``dest_root``; an empty path means the whole tree.

        Never raises. Exactly one INFO (success) or ERROR (failure) record is
        logged per call. Calls are not serialized here: the dispatch loop is
        the only caller and runs them one at a time.
        """
        cmd = build_rsync_command(self.rsync_bin, source_root, dest_root, rel_path)
        label = rel_path or "."
        self.logger.debug("exec: %s", " ".join(cmd))

        result = self._run(cmd)

        if result.ok:
            log_action(self.logger, "SYNC", f"{label} -> {dest_root}", path=label, is_dir=not rel_path)
        else:
            log_action(
                self.logger,
                "SYNC",
                f"ERROR {label} -> {dest_root} | {result.diagnostic}",
                path=label,
                is_dir=not rel_path,
                level=logging.ERROR,
            )
        return result

    def _run(self, cmd: list[str]) -> SyncResult:
        try:
            proc = self.runner(cmd, capture_output=True, text=True, check=False, timeout=self.timeout_sec)
        except FileNotFoundError as e:
            return SyncResult(False, f"cannot launch {cmd[0]}: {e}")
        except subprocess.TimeoutExpired:
            return SyncResult(False, f"timed out after {self.timeout_sec}s")
        except OSError as e:
            return SyncResult(False, f"cannot collect output of {cmd[0]}: {e}")
        except Exception as e:
            return SyncResult(False, f"unexpected error running {cmd[0]}: {e}")

        if proc.returncode != 0:
            detail = _last_line(proc.stderr) or _last_line(proc.stdout) or "no output"
            return SyncResult(False, f"exit status {proc.returncode}: {detail}")
        if proc.stdout and proc.stdout.strip():
            self.logger.debug("rsync: %s", proc.stdout.strip())
        return SyncResult(True, "")


# -------------------------
# Bootstrap + dispatch
# -------------------------

def bootstrap(config: WatchConfig, invoker: SyncInvoker, logger: logging.Logger) -> bool:
    """Run the whole-tree sync once when enabled. A failure is logged, never raised."""
    if not config.bootstrap_enabled:
        return False
    log_action(logger, "BOOTSTRAP", f"full sync {config.source_root} -> {config.dest_root}")
    result = invoker.invoke(config.source_root, config.dest_root, "")
    if result.ok:
        log_action(logger, "BOOTSTRAP", "done")
    else:
        log_action(logger, "BOOTSTRAP", "failed, continuing with watch", level=logging.WARNING)
    return True


class DispatchLoop:
    def __init__(
        self,
        config: WatchConfig,
        source,
        invoker: SyncInvoker,
        logger: logging.Logger,
        ignore: Optional[IgnoreMatcher] = None,
    ):
        self.config = config
        self.source = source
        self.invoker = invoker
        self.logger = logger
        self.ignore = ignore

    def run(self, stop: Optional[threading.Event] = None) -> int:
        dispatched = 0
        while stop is None or not stop.is_set():
            event = self.source.next_event()
            if event is None:
                if stop is not None and stop.is_set():
                    break
                raise ChannelClosedError("event channel closed")
            if self.dispatch(event):
                dispatched += 1
        return dispatched

    def dispatch(self, event: RawEvent) -> bool:
        path = classify(event)
        if path is None:
            self.logger.debug("skipping %s", event)
            return False

        rel = relativize(self.config.source_root, path)
        if self.ignore and self.ignore.is_ignored(rel):
            log_action(self.logger, "SKIP", f"ignored {rel}", path=rel, is_dir=False, level=logging.DEBUG)
            return False

        self.invoker.invoke(self.config.source_root, self.config.dest_root, rel)
        return True


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    env = os.environ if environ is None else environ

    log_dir_raw = args.log_dir or env.get(ENV_LOG_DIR)
    level = args.log_level or env.get(ENV_LOG_LEVEL, "INFO")
    try:
        logger = setup_logger(Path(log_dir_raw) if log_dir_raw else None, level=level)
    except ConfigError as e:
        fatal(logging.getLogger(LOGGER_NAME), f"config error: {e}")
        return EXIT_FATAL

    try:
        cfg = validate_config(build_config(args, env))
    except ConfigError as e:
        fatal(logger, f"config error: {e}")
        return EXIT_FATAL

    logger.info("Source: %s", cfg.source_root)
    logger.info("Dest  : %s", cfg.dest_root)
    logger.debug("%s", cfg)

    source = ObserverEventSource(cfg.source_root, delay_sec=cfg.debounce_sec, logger=logger)
    try:
        source.start()
    except WatchRegistrationError as e:
        fatal(logger, str(e))
        return EXIT_FATAL

    invoker = SyncInvoker(logger, rsync_bin=cfg.rsync_bin, timeout_sec=cfg.sync_timeout_sec)
    ignore = IgnoreMatcher(cfg.ignore_patterns)
    stop = threading.Event()

    logger.info("Starting watcher... (Ctrl+C to stop)")
    try:
        bootstrap(cfg, invoker, logger)
        DispatchLoop(cfg, source, invoker, logger, ignore=ignore).run(stop)
    except KeyboardInterrupt:
        stop.set()
        logger.info("Stopping...")
    except RetroSyncError as e:
        fatal(logger, str(e))
        return EXIT_FATAL
    finally:
        source.stop()
        logger.info("Stopped.")
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
