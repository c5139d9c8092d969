"""File system watcher for the events and rules files."""

import asyncio
import sys
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer


def _log(msg: str):
    print(msg, file=sys.stderr)


class SourceFileHandler(FileSystemEventHandler):
    """Pushes a ``source_changed`` trigger when a watched file changes.

    Atomic writes show up as create/move of the target name, so those count
    as changes too. Bursts inside ``debounce_seconds`` collapse into one.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        paths: Iterable[str],
        debounce_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loop = loop
        self._queue = queue
        self._paths = {str(Path(p).resolve()) for p in paths}
        self._debounce_seconds = debounce_seconds
        self._clock = clock
        self._last_event_time: Optional[float] = None

    def _watched(self, path) -> bool:
        if not path:
            return False
        if isinstance(path, bytes):
            path = path.decode()
        return str(Path(path).resolve()) in self._paths

    def _emit(self, path: str, change_type: str):
        now = self._clock()
        if self._last_event_time is not None and now - self._last_event_time < self._debounce_seconds:
            return
        self._last_event_time = now
        trigger = {"type": "source_changed", "detail": f"{Path(path).name} {change_type}"}
        self._loop.call_soon_threadsafe(self._queue.put_nowait, trigger)

    def on_modified(self, event):
        if not event.is_directory and self._watched(event.src_path):
            self._emit(event.src_path, "modified")

    def on_created(self, event):
        if not event.is_directory and self._watched(event.src_path):
            self._emit(event.src_path, "created")

    def on_moved(self, event):
        dest = getattr(event, "dest_path", "")
        if not event.is_directory and self._watched(dest):
            self._emit(dest, "replaced")

    def on_deleted(self, event):
        if not event.is_directory and self._watched(event.src_path):
            self._emit(event.src_path, "deleted")


def start_source_watcher(loop, queue: asyncio.Queue, paths: Iterable[str], debounce_seconds: float = 1.0):
    """Watch the parent directories of ``paths``; returns the started observer."""
    paths = [str(Path(p).resolve()) for p in paths]
    handler = SourceFileHandler(loop, queue, paths, debounce_seconds)
    observer = Observer()
    for directory in sorted({str(Path(p).parent) for p in paths}):
        Path(directory).mkdir(parents=True, exist_ok=True)
        observer.schedule(handler, directory, recursive=False)
    observer.daemon = True
    observer.start()
    _log(f"[Watcher] watching {', '.join(Path(p).name for p in paths)}")
    return observer
