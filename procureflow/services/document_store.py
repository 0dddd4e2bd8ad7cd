from __future__ import annotations

import mimetypes
import uuid
from pathlib import Path
from typing import Protocol

from procureflow.services.errors import ExternalServiceError, NotFoundError


class DocumentStore(Protocol):
    def put(self, data: bytes, content_type: str) -> str: ...

    def get(self, key: str) -> bytes: ...

    def delete(self, key: str) -> None: ...


def _new_key(content_type: str) -> str:
    suffix = mimetypes.guess_extension(content_type) or '.bin'
    return f'{uuid.uuid4().hex}{suffix}'


class LocalDocumentStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise NotFoundError('Document not found')
        return path

    def put(self, data: bytes, content_type: str) -> str:
        key = _new_key(content_type)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._path(key).write_bytes(data)
        except OSError as exc:
            raise ExternalServiceError(f'Document store write failed: {exc}') from exc
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise NotFoundError('Document not found')
        return path.read_bytes()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self.blobs: dict[str, tuple[bytes, str]] = {}

    def put(self, data: bytes, content_type: str) -> str:
        key = _new_key(content_type)
        self.blobs[key] = (bytes(data), content_type)
        return key

    def get(self, key: str) -> bytes:
        if key not in self.blobs:
            raise NotFoundError('Document not found')
        return self.blobs[key][0]

    def delete(self, key: str) -> None:
        self.blobs.pop(key, None)
