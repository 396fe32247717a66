"""Point-cloud and mesh sources: one interface, file-backed or streamed.

The pipeline never sniffs its environment; callers pick the source type.
"""

from pathlib import Path
from typing import BinaryIO, Protocol, Union

from splatrig.core.errors import AssetLoadFailure
from splatrig.core.splats import SplatCloud
from splatrig.loaders.glb_loader import MeshAsset, parse_glb_bytes
from splatrig.loaders.ply_io import read_ply_bytes

StreamInput = Union[bytes, bytearray, BinaryIO]


class PointCloudSource(Protocol):
    name: str

    def read_bytes(self) -> bytes: ...

    def load(self) -> SplatCloud: ...


class MeshSource(Protocol):
    name: str

    def read_bytes(self) -> bytes: ...

    def load(self) -> MeshAsset: ...


def _read_path(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise AssetLoadFailure(f"Could not open {path}: {exc}") from exc


def _read_stream(data: StreamInput) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return data.read()


class _CachedSource:
    def __init__(self, name: str):
        self.name = name
        self._raw: bytes | None = None

    def _fetch(self) -> bytes:
        raise NotImplementedError

    def read_bytes(self) -> bytes:
        if self._raw is None:
            self._raw = self._fetch()
        return self._raw


class FilePointCloudSource(_CachedSource):
    def __init__(self, path):
        self.path = Path(path)
        super().__init__(self.path.stem)

    def _fetch(self) -> bytes:
        return _read_path(self.path)

    def load(self) -> SplatCloud:
        return read_ply_bytes(self.read_bytes(), name=self.name)


class StreamPointCloudSource(_CachedSource):
    def __init__(self, data: StreamInput, name: str = "stream"):
        super().__init__(name)
        self._data = data

    def _fetch(self) -> bytes:
        return _read_stream(self._data)

    def load(self) -> SplatCloud:
        return read_ply_bytes(self.read_bytes(), name=self.name)


class FileMeshSource(_CachedSource):
    def __init__(self, path):
        self.path = Path(path)
        super().__init__(self.path.stem)

    def _fetch(self) -> bytes:
        return _read_path(self.path)

    def load(self) -> MeshAsset:
        return parse_glb_bytes(self.read_bytes(), name=self.name)


class StreamMeshSource(_CachedSource):
    def __init__(self, data: StreamInput, name: str = "avatar"):
        super().__init__(name)
        self._data = data

    def _fetch(self) -> bytes:
        return _read_stream(self._data)

    def load(self) -> MeshAsset:
        return parse_glb_bytes(self.read_bytes(), name=self.name)
