# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Durable cache of image embeddings.

Encoding an image is by far the most expensive step of an interactive
session, so embeddings are memoized by image fingerprint. The layering is:

- ByteStore: get(key) / put(key, bytes). FileByteStore keeps one file per key
  and survives process restarts; InMemoryByteStore lives as long as the
  object does.
- EmbeddingStore: serializes Embeddings into a ByteStore.

There is no TTL and no invalidation: an entry lives until it is overwritten.
Cache keys are chosen by the caller (InteractionSession builds them from
image_fingerprint() and the target size).
"""

import abc
import hashlib
import logging
import os
import tempfile
from typing import Dict, Optional, Union

import numpy as np
from PIL import Image

from sam2_interactive.types import Embeddings


def image_fingerprint(image: Union[np.ndarray, Image.Image]) -> str:
    """Content hash of an image: sha256 over its mode, size and pixel bytes."""
    digest = hashlib.sha256()
    if isinstance(image, Image.Image):
        digest.update(image.mode.encode("ascii"))
        digest.update(repr(image.size).encode("ascii"))
        digest.update(image.tobytes())
    elif isinstance(image, np.ndarray):
        array = np.ascontiguousarray(image)
        digest.update(str(array.dtype).encode("ascii"))
        digest.update(repr(array.shape).encode("ascii"))
        digest.update(array.tobytes())
    else:
        raise NotImplementedError("Image format not supported")
    return digest.hexdigest()


class ByteStore(abc.ABC):
    @abc.abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the bytes stored under key, or None."""

    @abc.abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store data under key, replacing any previous value."""


class InMemoryByteStore(ByteStore):
    def __init__(self) -> None:
        self._entries: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self._entries.get(key)

    def put(self, key: str, data: bytes) -> None:
        self._entries[key] = bytes(data)

    def __len__(self) -> int:
        return len(self._entries)


class FileByteStore(ByteStore):
    """
    One file per key under root.

    Keys are hashed into file names so any caller-chosen string is safe.
    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so readers never see a half-written entry.
    """

    suffix = ".npz"

    def __init__(self, root: str) -> None:
        self.root = os.fspath(root)

    def _path_for(self, key: str) -> str:
        name = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return os.path.join(self.root, name + self.suffix)

    def get(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def put(self, key: str, data: bytes) -> None:
        os.makedirs(self.root, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, self._path_for(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


class EmbeddingStore:
    def __init__(self, byte_store: Optional[ByteStore] = None) -> None:
        self.byte_store = byte_store if byte_store is not None else InMemoryByteStore()

    def get(self, fingerprint: str) -> Optional[Embeddings]:
        data = self.byte_store.get(fingerprint)
        if data is None:
            return None
        return Embeddings.from_bytes(data)

    def put(self, fingerprint: str, embeddings: Embeddings) -> None:
        self.byte_store.put(fingerprint, embeddings.to_bytes())
        logging.info(f"Stored embeddings under {fingerprint}")
