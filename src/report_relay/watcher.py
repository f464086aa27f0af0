"""Filesystem watch facility for the reports folder, built on watchdog."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .models import EventKind, FileEvent

if TYPE_CHECKING:
    from watchdog.events import FileSystemEvent


class ReportEventHandler(FileSystemEventHandler):
    """Translates watchdog events into ``FileEvent`` records.

    Runs on the observer thread; it only builds records and hands them to
    ``callback``. Deletion of the watched folder itself is reported through
    ``on_error`` instead, since no further events can arrive after it.
    """

    def __init__(
        self,
        directory: Path,
        callback: Callable[[FileEvent], None],
        on_error: Callable[[str], None],
        logger: logging.Logger,
    ) -> None:
        """Initialize the event handler.

        Args:
            directory: Watched folder.
            callback: Receives each file event.
            on_error: Receives a description of a watcher-level failure.
            logger: Logger instance.

        """
        super().__init__()
        self.directory = directory
        self.callback = callback
        self.on_error = on_error
        self.logger = logger

    def _emit(self, kind: EventKind, src: str | bytes, dest: str | bytes | None = None) -> None:
        event = FileEvent(
            kind=kind,
            path=Path(os.fsdecode(src)),
            dest_path=Path(os.fsdecode(dest)) if dest else None,
        )
        self.logger.debug("Filesystem event: %s %s", kind.value, event.path.name)
        self.callback(event)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EventKind.CREATED, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EventKind.MODIFIED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EventKind.RENAMED, event.src_path, event.dest_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            if Path(os.fsdecode(event.src_path)) == self.directory:
                self.on_error(f"Watched folder was removed: {self.directory}")
            return
        self._emit(EventKind.DELETED, event.src_path)


class FileWatcher:
    """Watches the reports folder and queues file events for the pipeline.

    Events cross from the observer thread into a bounded ``asyncio.Queue``
    through ``loop.call_soon_threadsafe``. When the queue is full the oldest
    event is dropped; the periodic directory scan recovers anything lost.
    """

    def __init__(self, directory: Path, logger: logging.Logger, *, queue_size: int = 1000) -> None:
        """Initialize the file watcher.

        Args:
            directory: Folder to watch (non-recursive).
            logger: Logger instance.
            queue_size: Capacity of the event queue.

        """
        self.directory = directory
        self.logger = logger
        self._observer: Observer | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue[FileEvent] = asyncio.Queue(maxsize=queue_size)
        self._running = False
        self.error: str | None = None
        self.dropped_events = 0

    def _offer(self, event: FileEvent) -> None:
        """Put an event on the queue, evicting the oldest one when full. Loop thread only."""
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            dropped = self._events.get_nowait()
            self._events.put_nowait(event)
            self.dropped_events += 1
            self.logger.warning("Event queue full, dropped event for %s", dropped.path.name)

    def _on_event(self, event: FileEvent) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._offer, event)

    def _on_error(self, message: str) -> None:
        self.logger.error("File watcher error: %s", message)
        self.error = message

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start watching the folder.

        Args:
            loop: Event loop receiving the events. Defaults to the running loop.

        Raises:
            OSError: If the folder cannot be watched.

        """
        if self._observer is not None:
            return

        self._loop = loop or asyncio.get_running_loop()
        self.error = None
        observer = Observer()
        handler = ReportEventHandler(self.directory, self._on_event, self._on_error, self.logger)
        observer.schedule(handler, str(self.directory), recursive=False)
        observer.start()

        self._observer = observer
        self._running = True
        self.logger.info("Watching folder: %s", self.directory)

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is not None:
            observer = self._observer
            self._observer = None
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=5.0)
            self.logger.info("File watcher stopped")
        self._running = False

    def restart(self) -> None:
        """Tear down the observer and create a fresh one."""
        self.stop()
        self.start(self._loop)

    @property
    def is_running(self) -> bool:
        """True while the observer and its emitter threads are alive and healthy."""
        if not self._running or self._observer is None or self.error is not None:
            return False
        if not self._observer.is_alive():
            return False
        return all(emitter.is_alive() for emitter in self._observer.emitters)

    async def get_event(self, timeout: float | None = None) -> FileEvent | None:
        """Get the next file event.

        Args:
            timeout: Maximum time to wait for an event.

        Returns:
            Next event, or None on timeout.

        """
        try:
            if timeout is not None:
                return await asyncio.wait_for(self._events.get(), timeout=timeout)
            return await self._events.get()
        except TimeoutError:
            return None

    def pending(self) -> int:
        return self._events.qsize()
