"""Streaming downloads and archive extraction."""

from collections.abc import Callable
from pathlib import Path
import shutil
import tarfile
import tempfile
import zipfile

import httpx
import structlog

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int | None], None]


async def download_file(
    url: str,
    dest: Path,
    *,
    timeout: float = 120.0,
    progress: ProgressCallback | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Path:
    """Stream ``url`` to ``dest``; a partial file is removed on failure.

    Raises:
        httpx.HTTPError: On transport errors or a non-2xx response
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    logger.info("download_started", url=url, dest=str(dest))
    try:
        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=transport
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length", 0)) or None
                done = 0
                with dest.open("wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
                        done += len(chunk)
                        if progress:
                            progress(done, total)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise

    logger.info("download_finished", url=url, size=dest.stat().st_size)
    return dest


def extract_archive(archive_path: Path, target: Path, flatten: bool = True) -> None:
    """Unpack into ``target``.

    With ``flatten`` a single top-level directory in the archive becomes
    ``target`` itself; otherwise entries are merged into ``target``.
    """
    with tempfile.TemporaryDirectory(dir=archive_path.parent) as tmp:
        tmp_path = Path(tmp)
        if zipfile.is_zipfile(archive_path):
            with zipfile.ZipFile(archive_path) as zf:
                zf.extractall(tmp_path)
        else:
            with tarfile.open(archive_path, "r:*") as tf:
                tf.extractall(tmp_path, filter="data")

        entries = list(tmp_path.iterdir())
        target.parent.mkdir(parents=True, exist_ok=True)

        if flatten:
            if target.exists():
                shutil.rmtree(target)
            if len(entries) == 1 and entries[0].is_dir():
                shutil.move(str(entries[0]), str(target))
                return

        target.mkdir(parents=True, exist_ok=True)
        for entry in entries:
            dest = target / entry.name
            if dest.exists():
                if dest.is_dir():
                    shutil.rmtree(dest)
                else:
                    dest.unlink()
            shutil.move(str(entry), str(dest))
