import asyncio
import json
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from app.domain.entities import FileDescriptor
from app.domain.exceptions import NotFound


class FileStore(Protocol):
    async def put(self, filename: str, content_type: str, data: bytes) -> FileDescriptor: ...

    async def get(self, file_id: str) -> tuple[FileDescriptor, bytes]: ...


class LocalFileStore:
    """Keeps uploads on local disk as ``<id>.bin`` plus a ``<id>.json`` descriptor."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    async def put(self, filename: str, content_type: str, data: bytes) -> FileDescriptor:
        descriptor = FileDescriptor(
            file_id=uuid4().hex,
            filename=Path(filename).name or "upload",
            content_type=content_type or "application/octet-stream",
            size=len(data),
        )
        await asyncio.to_thread(self._write, descriptor, data)
        return descriptor

    async def get(self, file_id: str) -> tuple[FileDescriptor, bytes]:
        if not file_id.isalnum():
            raise NotFound("File", file_id)
        return await asyncio.to_thread(self._read, file_id)

    def _write(self, descriptor: FileDescriptor, data: bytes) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        (self._root / f"{descriptor.file_id}.bin").write_bytes(data)
        (self._root / f"{descriptor.file_id}.json").write_text(json.dumps(descriptor.to_dict()))

    def _read(self, file_id: str) -> tuple[FileDescriptor, bytes]:
        meta_path = self._root / f"{file_id}.json"
        data_path = self._root / f"{file_id}.bin"
        if not meta_path.exists() or not data_path.exists():
            raise NotFound("File", file_id)
        descriptor = FileDescriptor.from_dict(json.loads(meta_path.read_text()))
        return descriptor, data_path.read_bytes()
