# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Cache-first acquisition of model artifacts.

Artifacts are looked up in a local key/value directory keyed by filename. A miss
triggers a download from the Hugging Face Hub; the downloaded bytes are then written
back into the local cache on a best-effort basis. A failed write never fails the
acquisition: the model stays usable from memory for the rest of the session.
"""

import errno
import logging
import os
import tempfile

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from sam2_interactive.errors import ModelUnavailableError

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


@dataclass(frozen=True)
class ModelArtifact:
    """A remote model binary: which role it plays and where it lives on the Hub."""

    name: str
    repo_id: str
    filename: str
    revision: Optional[str] = None

    @property
    def cache_key(self) -> str:
        return self.filename


class ModelCache:
    """
    Flat on-disk key/value store for model bytes.

    Empty entries are treated as misses so that a truncated earlier write does not
    shadow a good download.
    """

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(os.path.expanduser(str(cache_dir)))

    def _path(self, key: str) -> Path:
        return self.cache_dir / key

    def get(self, key: str) -> Optional[bytes]:
        try:
            data = self._path(key).read_bytes()
        except OSError:
            return None
        return data or None

    def put(self, key: str, data: bytes) -> None:
        """Atomically store ``data`` under ``key``. Raises ``OSError`` on any storage failure."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{key}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, self._path(key))
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def fetch_from_hub(artifact: ModelArtifact) -> bytes:
    """
    Read an artifact from the Hugging Face Hub straight into memory.

    Nothing is written to disk here, so a full disk can only affect the cache
    write-back in ``acquire_model_bytes``, never the fetch itself.
    """
    from huggingface_hub import HfFileSystem

    revision = f"@{artifact.revision}" if artifact.revision else ""
    return HfFileSystem().read_bytes(f"{artifact.repo_id}{revision}/{artifact.filename}")


def acquire_model_bytes(
    artifact: ModelArtifact,
    cache: Optional[ModelCache] = None,
    fetcher: Optional[Callable[[ModelArtifact], bytes]] = None,
) -> bytes:
    """
    Return the bytes of ``artifact``, preferring the local cache over the network.

    Args:
        artifact: The model to acquire.
        cache: Local cache to consult first and write back to. ``None`` disables caching.
        fetcher: Network fetch function, ``fetch_from_hub`` by default.

    Returns:
        bytes: Non-empty model bytes.

    Raises:
        ModelUnavailableError: If the artifact is not cached and the fetch fails.
            No retry is attempted.
    """
    if cache is not None:
        cached = cache.get(artifact.cache_key)
        if cached:
            logging.info(f"Loaded {artifact.name} model from cache: {artifact.cache_key}")
            return cached

    fetcher = fetcher or fetch_from_hub
    logging.info(f"Downloading {artifact.name} model {artifact.repo_id}/{artifact.filename}")
    try:
        data = fetcher(artifact)
    except Exception as e:
        raise ModelUnavailableError(
            f"Failed to fetch {artifact.filename}: {e}"
        ) from e
    if not data:
        raise ModelUnavailableError(f"Failed to fetch {artifact.filename}: empty response")

    if cache is not None:
        try:
            cache.put(artifact.cache_key, data)
        except OSError as e:
            if e.errno in _QUOTA_ERRNOS:
                logging.info(f"Cache quota exhausted, keeping {artifact.filename} in memory only")
            else:
                logging.warning(f"Failed to cache model {artifact.filename}: {e}")
    return data
