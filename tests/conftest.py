import io
import zipfile
from pathlib import Path

import pytest


def zip_bytes(entries: dict) -> bytes:
    """Build an in-memory zip from {name: bytes}; names ending in '/' become directories."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries.items():
            if name.endswith("/"):
                zf.writestr(zipfile.ZipInfo(name), b"")
            else:
                zf.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def make_zip(tmp_path: Path):
    def _make(entries: dict, name: str = "submissions.zip") -> Path:
        path = tmp_path / name
        path.write_bytes(zip_bytes(entries))
        return path

    return _make


@pytest.fixture
def target(tmp_path: Path) -> Path:
    return tmp_path / "submissions"


@pytest.fixture
def build_zip_bytes():
    return zip_bytes


def patch_zip_headers(data: bytes, flag_bits: int = 0, compress_type: int = None) -> bytes:
    """Rewrite the flag bits and/or compression method in every local and central header."""
    patched = bytearray(data)
    # (signature, offset of general purpose flags, offset of compression method)
    for signature, flags_at, method_at in ((b"PK\x03\x04", 6, 8), (b"PK\x01\x02", 8, 10)):
        start = patched.find(signature)
        while start != -1:
            patched[start + flags_at] |= flag_bits
            if compress_type is not None:
                patched[start + method_at : start + method_at + 2] = compress_type.to_bytes(2, "little")
            start = patched.find(signature, start + 4)
    return bytes(patched)


@pytest.fixture
def patch_headers():
    return patch_zip_headers
