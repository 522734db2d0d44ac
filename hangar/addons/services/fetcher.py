from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from requests import RequestException

from ..domain.errors import DownloadError

logger = logging.getLogger("hangar.engine.fetcher")

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
DEFAULT_TIMEOUT = 30.0

TransferCallback = Callable[[int, Optional[int]], None]


def validate_download_url(url: Optional[str]) -> str:
    """Only absolute http(s) URLs are accepted."""
    u = (url or "").strip()
    parsed = urlparse(u)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        raise DownloadError(f"Invalid download URL: {url!r} (expected http(s))", url=url)
    return u


def _content_length(resp: requests.Response) -> Optional[int]:
    raw = resp.headers.get("content-length")
    if raw is None:
        return None
    try:
        n = int(raw)
    except ValueError:
        return None
    return n if n >= 0 else None


def download_to_file(
    url: str,
    dest_path: Path,
    *,
    on_progress: Optional[TransferCallback] = None,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> Path:
    """
    Stream `url` into `dest_path`.

    on_progress(transferred, total) is called once per chunk; total is None
    when the server omits Content-Length. No retries here.
    """
    url = validate_download_url(url)
    http = session or requests.Session()
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Downloading %s -> %s", url, dest_path)
    transferred = 0
    try:
        with http.get(url, stream=True, timeout=timeout) as resp:
            if resp.status_code < 200 or resp.status_code >= 300:
                raise DownloadError(
                    f"Download failed: HTTP {resp.status_code}",
                    url=url,
                    status_code=resp.status_code,
                )

            total = _content_length(resp)
            logger.debug("Download response: status=%s content-length=%s", resp.status_code, total)

            with dest_path.open("wb") as out:
                for chunk in resp.iter_content(chunk_size=chunk_size):
                    if not chunk:
                        continue
                    out.write(chunk)
                    transferred += len(chunk)
                    if on_progress is not None:
                        on_progress(transferred, total)
    except RequestException as e:
        logger.error("Download failed for %s: %s", url, e)
        raise DownloadError(f"Download failed: {e}", url=url) from e
    except OSError as e:
        logger.error("Could not write download to %s: %s", dest_path, e)
        raise DownloadError(f"Download failed writing {dest_path}: {e}", url=url) from e
    finally:
        if session is None:
            http.close()

    logger.info("Downloaded %d bytes from %s", transferred, url)
    return dest_path
