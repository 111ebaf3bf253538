"""
Artifact download with retry.

Downloads always land in a scoped temporary file (never in the install
directory). The file is removed when the ``fetch`` context exits, on
success and on failure alike.

Retry policy:
    - connection errors, timeouts, HTTP 5xx  → retried with backoff
    - HTTP 4xx                                → permanent, raised at once
    - file:// URLs                            → read directly, never retried
"""

from __future__ import annotations

import http.client
import logging
import os
import shutil
import tempfile
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from rush import __version__
from rush.core.errors import FetchError
from rush.core.reliability.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

USER_AGENT = f"rush/{__version__}"

_CHUNK = 64 * 1024

ProgressCallback = Callable[[int, int], None]


class _TransientError(Exception):
    """A failure worth retrying."""


def _is_file_url(url: str) -> bool:
    return urllib.parse.urlparse(url).scheme == "file"


def _file_url_path(url: str) -> Path:
    parsed = urllib.parse.urlparse(url)
    return Path(urllib.request.url2pathname(parsed.netloc + parsed.path))


def filename_from_url(url: str) -> str:
    """Last path segment of ``url`` (used as an archive-format hint)."""
    name = Path(urllib.parse.urlparse(url).path).name
    return urllib.parse.unquote(name) or "download"


class Fetcher:
    """HTTP(S)/file downloader.

    Args:
        timeout: Per-request socket timeout in seconds.
        backoff: Retry schedule for transient failures.
        user_agent: Sent with every HTTP request.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        backoff: BackoffPolicy | None = None,
        user_agent: str = USER_AGENT,
    ):
        self.timeout = timeout
        self.backoff = backoff or BackoffPolicy()
        self.user_agent = user_agent

    @contextmanager
    def fetch(
        self,
        url: str,
        work_dir: Path | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Iterator[Path]:
        """Download ``url`` and yield the path of the temporary copy.

        Raises:
            FetchError: After the retry ceiling, or at once for 4xx and
                missing local files.
        """
        if work_dir is not None:
            work_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=work_dir,
            prefix=f"download-{os.getpid()}-",
            suffix=f"-{filename_from_url(url)}",
        )
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            self._download_to(url, tmp, on_progress)
            yield tmp
        finally:
            tmp.unlink(missing_ok=True)

    # ── Internals ────────────────────────────────────────────────

    def _download_to(self, url: str, dest: Path, on_progress: ProgressCallback | None) -> None:
        if _is_file_url(url):
            self._copy_local(url, dest, on_progress)
            return

        last_error = ""
        for attempt in self.backoff.attempts():
            try:
                self._http_get(url, dest, on_progress)
                if attempt > 1:
                    logger.info("Downloaded %s on attempt %d", url, attempt)
                return
            except _TransientError as e:
                last_error = str(e)
                logger.warning(
                    "Download attempt %d/%d for %s failed: %s",
                    attempt,
                    self.backoff.max_attempts,
                    url,
                    e,
                )
        raise FetchError(url, f"{last_error} (gave up after {self.backoff.max_attempts} attempts)")

    def _copy_local(self, url: str, dest: Path, on_progress: ProgressCallback | None) -> None:
        source = _file_url_path(url)
        if not source.is_file():
            raise FetchError(url, f"No such file: {source}")
        total = source.stat().st_size
        if on_progress:
            on_progress(0, total)
        try:
            shutil.copyfile(source, dest)
        except OSError as e:
            raise FetchError(url, str(e)) from e
        if on_progress:
            on_progress(total, total)

    def _http_get(self, url: str, dest: Path, on_progress: ProgressCallback | None) -> None:
        request = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as resp:
                total = int(resp.headers.get("Content-Length") or 0)
                done = 0
                if on_progress:
                    on_progress(0, total)
                with dest.open("wb") as out:
                    for chunk in iter(lambda: resp.read(_CHUNK), b""):
                        out.write(chunk)
                        done += len(chunk)
                        if on_progress:
                            on_progress(done, total)
                if total and done < total:
                    raise _TransientError(f"connection closed after {done} of {total} bytes")
        except urllib.error.HTTPError as e:
            if 500 <= e.code < 600:
                raise _TransientError(f"HTTP {e.code} {e.reason}") from e
            raise FetchError(url, f"HTTP {e.code} {e.reason}") from e
        except urllib.error.URLError as e:
            raise _TransientError(f"{e.reason}") from e
        except (TimeoutError, ConnectionError, http.client.HTTPException) as e:
            raise _TransientError(f"{type(e).__name__}: {e}") from e
        except OSError as e:
            # Local write failures (disk full) are not network problems
            raise FetchError(url, str(e)) from e
