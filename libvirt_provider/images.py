"""Reference-counted, download-deduplicating cache of image factory disk images."""

from __future__ import annotations

import os
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import requests

from libvirt_provider.constants import (
    DEFAULT_CACHE_PATH,
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_MAX_AGE,
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_TEMP_PREFIX,
    DOWNLOAD_TEMP_SUFFIX,
    DOWNLOAD_TIMEOUT,
    IMAGE_ASSET,
    IMAGE_FACTORY_URL,
    USER_AGENT,
)
from libvirt_provider.exceptions import ImageDownloadError
from libvirt_provider.utils import ensure_directory, log


@dataclass
class CacheEntry:
    key: str
    refcount: int = 0
    idle_since: Optional[float] = None  # only meaningful while refcount == 0


class ImageCache:
    """Local cache of ``<schematic>-<version>`` images shared by all provisioning flows.

    * :meth:`acquire` takes a reference before doing any I/O and returns the
      cached file path, downloading it at most once per key no matter how
      many callers ask concurrently.
    * :meth:`release` drops the reference; the retention clock starts when the
      last reference goes away.
    * :meth:`cleanup` evicts files that nobody references and that have been
      idle for longer than ``max_age``. :meth:`start` runs it periodically.

    Downloads run on the cache's own worker threads, so a caller that stops
    waiting (``acquire(..., timeout=...)``) does not cancel a fetch other
    callers are blocked on.
    """

    def __init__(
        self,
        cache_path: Path = DEFAULT_CACHE_PATH,
        base_url: str = IMAGE_FACTORY_URL,
        max_age: float = DEFAULT_MAX_AGE,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        download_timeout: float = DOWNLOAD_TIMEOUT,
        asset: str = IMAGE_ASSET,
        session_factory: Callable[[], requests.Session] = requests.Session,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 4,
    ) -> None:
        self.cache_path = Path(cache_path)
        self.base_url = base_url.rstrip("/")
        self.max_age = max_age
        self.cleanup_interval = cleanup_interval
        self.download_timeout = download_timeout
        self.asset = asset
        self._session_factory = session_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._refs: Dict[str, int] = {}
        self._idle_since: Dict[str, float] = {}
        self._inflight: Dict[str, Future] = {}
        self._active_temps: Set[str] = set()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="image-download")
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        ensure_directory(self.cache_path)

    def cache_key(self, schematic_id: str, version: str) -> str:
        extension = self.asset.split(".", 1)[1] if "." in self.asset else self.asset
        return f"{schematic_id}-{version}.{extension}"

    def image_url(self, schematic_id: str, version: str) -> str:
        return f"{self.base_url}/image/{schematic_id}/{version}/{self.asset}"

    # -- references ------------------------------------------------------

    def acquire(self, schematic_id: str, version: str, timeout: Optional[float] = None) -> Path:
        """Return the local path of the image, downloading it if needed.

        The caller must call :meth:`release` once it is done with the file.
        On failure no reference is kept and the error is raised; there are no
        internal retries.
        """
        key = self.cache_key(schematic_id, version)
        path = self.cache_path / key

        with self._lock:
            self._refs[key] = self._refs.get(key, 0) + 1
            future = self._inflight.get(key)
            if future is None and path.exists():
                # cleanup() holds the same lock, so the file cannot vanish under the new ref
                log("DEBUG", f"Image cache hit: {key}")
                return path
            if future is None:
                future = self._executor.submit(self._fetch, key, schematic_id, version, path)
                self._inflight[key] = future
            else:
                log("DEBUG", f"Joining in-flight download of {key}")

        try:
            future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            self._unref(key)
            raise ImageDownloadError(f"timed out after {timeout}s waiting for image {key}") from exc
        except Exception:
            self._unref(key)
            raise
        return path

    def release(self, schematic_id: str, version: str) -> None:
        key = self.cache_key(schematic_id, version)
        with self._lock:
            count = self._refs.get(key, 0) - 1
            if count > 0:
                self._refs[key] = count
                return
            if count < 0:
                log("WARN", f"Release of {key} without a matching acquire")
            self._refs.pop(key, None)
            self._idle_since[key] = self._clock()

    def refcount(self, schematic_id: str, version: str) -> int:
        with self._lock:
            return self._refs.get(self.cache_key(schematic_id, version), 0)

    def stats(self) -> List[CacheEntry]:
        with self._lock:
            keys = sorted(set(self._refs) | set(self._idle_since))
            return [
                CacheEntry(
                    key=key,
                    refcount=self._refs.get(key, 0),
                    idle_since=None if self._refs.get(key, 0) > 0 else self._idle_since.get(key),
                )
                for key in keys
            ]

    def _unref(self, key: str) -> None:
        with self._lock:
            count = self._refs.get(key, 0) - 1
            if count > 0:
                self._refs[key] = count
            else:
                self._refs.pop(key, None)

    # -- download --------------------------------------------------------

    def _fetch(self, key: str, schematic_id: str, version: str, path: Path) -> Path:
        try:
            if path.exists():
                log("INFO", f"Image already cached: {path}")
                return path
            self._download(key, schematic_id, version, path)
            return path
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def _download(self, key: str, schematic_id: str, version: str, path: Path) -> None:
        url = self.image_url(schematic_id, version)
        log("INFO", f"Downloading image {key}: {url}")
        start_time = time.monotonic()
        deadline = start_time + self.download_timeout

        # a fresh session per download, never shared between worker threads
        with self._session_factory() as session:
            try:
                response = session.get(
                    url,
                    stream=True,
                    timeout=self.download_timeout,
                    headers={"User-Agent": USER_AGENT},
                )
            except requests.RequestException as exc:
                raise ImageDownloadError(f"error fetching image {url}: {exc}") from exc

            with response:
                if response.status_code != 200:
                    raise ImageDownloadError(f"unexpected status code {response.status_code} fetching {url}")

                tmp_path: Optional[Path] = None
                downloaded = 0
                try:
                    ensure_directory(self.cache_path)
                    # Same directory as the final path so the rename below stays atomic
                    tmp = tempfile.NamedTemporaryFile(
                        delete=False,
                        dir=self.cache_path,
                        prefix=DOWNLOAD_TEMP_PREFIX,
                        suffix=DOWNLOAD_TEMP_SUFFIX,
                    )
                    tmp_path = Path(tmp.name)
                    with self._lock:
                        self._active_temps.add(tmp_path.name)
                    with tmp:
                        for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                            if not chunk:
                                continue
                            tmp.write(chunk)
                            downloaded += len(chunk)
                            if time.monotonic() > deadline:
                                raise ImageDownloadError(
                                    f"download of {url} exceeded {self.download_timeout:.0f}s"
                                )
                    os.replace(tmp_path, path)
                except (requests.RequestException, OSError) as exc:
                    self._remove_temp(tmp_path)
                    raise ImageDownloadError(f"error downloading image {url}: {exc}") from exc
                except Exception:
                    self._remove_temp(tmp_path)
                    raise
                finally:
                    if tmp_path is not None:
                        with self._lock:
                            self._active_temps.discard(tmp_path.name)

        elapsed = time.monotonic() - start_time
        log("SUCCESS", f"Downloaded {key} ({downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s)")

    @staticmethod
    def _remove_temp(tmp_path: Optional[Path]) -> None:
        if tmp_path is None:
            return
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            log("WARN", f"Failed to remove partial download {tmp_path}: {exc}")

    # -- eviction --------------------------------------------------------

    def cleanup(self) -> List[str]:
        """Run one eviction sweep and return the names of the removed files.

        Files nobody has touched since this process started (for example after
        a restart) get an idle stamp on first sight and are only removed by a
        later sweep. That also covers ``download-*`` leftovers of a crash.
        """
        removed: List[str] = []
        with self._lock:
            now = self._clock()
            try:
                entries = list(self.cache_path.iterdir())
            except OSError as exc:
                log("WARN", f"Failed to read cache directory {self.cache_path}: {exc}")
                return removed

            for entry in entries:
                if not entry.is_file():
                    continue
                key = entry.name
                if self._refs.get(key, 0) > 0:
                    log("DEBUG", f"Cached image {key} still in use, skipping cleanup")
                    continue
                if key in self._active_temps:
                    continue
                idle_since = self._idle_since.get(key)
                if idle_since is None:
                    self._idle_since[key] = now
                    continue
                if now - idle_since <= self.max_age:
                    continue
                try:
                    entry.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    log("WARN", f"Failed to remove cached image {entry}: {exc}")
                    continue
                self._idle_since.pop(key, None)
                removed.append(key)
                log("INFO", f"Removed cached image {key}")
        return removed

    def start(self) -> None:
        """Run :meth:`cleanup` every ``cleanup_interval`` seconds on a daemon thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="image-cache-cleanup", daemon=True)
        self._sweeper.start()

    def stop(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False)

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.cleanup_interval):
            try:
                self.cleanup()
            except Exception as exc:  # keep the sweeper alive for the process lifetime
                log("ERROR", f"Image cache cleanup failed: {exc}")
