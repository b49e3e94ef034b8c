"""Locate, expand or download the ONNX graph backing the inference engine."""
from __future__ import annotations

import contextlib
import gzip
import hashlib
import logging
import shutil
from pathlib import Path
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


def ensure_onnx_artifact(onnx_path: Path, download_url: Optional[str] = None) -> Path:
    """Return ``onnx_path`` once it exists on disk.

    A ``<path>.gz`` archive next to the target is expanded first; otherwise
    the graph is downloaded from ``download_url`` when one is configured.
    Raises ``FileNotFoundError`` when none of these yield a file.
    """

    archive_path = Path(str(onnx_path) + ".gz")
    if not onnx_path.is_file() and archive_path.is_file():
        logger.info("Expanding compressed ONNX artifact from '%s' to '%s'", archive_path, onnx_path)
        if extract_local_archive(archive_path, onnx_path):
            logger.info("Decompressed ONNX graph to '%s'", onnx_path)

    if not onnx_path.is_file() and download_url:
        logger.info("ONNX model missing at '%s'. Downloading artifact from '%s'", onnx_path, download_url)
        if download_onnx(onnx_path, download_url):
            logger.info("Successfully downloaded ONNX graph to '%s'", onnx_path)

    if not onnx_path.is_file():
        raise FileNotFoundError(
            "ONNX model not found at %s. Provide ANDRENA_ONNX_PATH, drop a compressed archive alongside it, "
            "or set ANDRENA_ONNX_URL." % onnx_path
        )
    return onnx_path


def download_onnx(target_path: Path, url: str) -> bool:
    target_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target_path.with_suffix(".tmp")
    timeout = httpx.Timeout(180.0, connect=30.0)
    try:
        with httpx.stream("GET", url, follow_redirects=True, timeout=timeout) as response:
            response.raise_for_status()
            with tmp_path.open("wb") as sink:
                for chunk in response.iter_bytes(1 << 20):
                    if chunk:
                        sink.write(chunk)
    except (httpx.HTTPError, OSError) as exc:
        logger.error("Failed to download ONNX artifact from '%s': %s", url, exc)
        with contextlib.suppress(FileNotFoundError):
            tmp_path.unlink()
        return False

    tmp_path.replace(target_path)
    return True


def extract_local_archive(archive_path: Path, target_path: Path) -> bool:
    target_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target_path.with_suffix(target_path.suffix + ".tmp")
    try:
        with gzip.open(archive_path, "rb") as source, tmp_path.open("wb") as sink:
            shutil.copyfileobj(source, sink)
    except (OSError, EOFError) as exc:
        logger.error("Failed to expand compressed ONNX artifact '%s': %s", archive_path, exc)
        with contextlib.suppress(FileNotFoundError):
            tmp_path.unlink()
        return False

    tmp_path.replace(target_path)
    return True


def file_digest(path: Path, length: int = 12) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as source:
        for chunk in iter(lambda: source.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()[:length]
