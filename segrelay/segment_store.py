"""Segment payload stores: in-memory or encrypted on disk."""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from segrelay.crypto import CryptoError, CryptoTransform
from segrelay.segments import SegmentDescriptor, content_type_for, new_segment_id

log = logging.getLogger("segrelay.segment_store")

ENCRYPTED_DIRNAME = "encrypted"
DECRYPTED_DIRNAME = "decrypted"


class SegmentStore:
    """Minimal protocol for segment payload backends."""

    def put(self, segment_id: str, filename: str, payload: bytes) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def get(self, segment_id: str) -> bytes | None:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete(self, segment_id: str) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    def ids(self) -> list[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    def clear(self) -> None:
        for segment_id in self.ids():
            self.delete(segment_id)

    def __contains__(self, segment_id: object) -> bool:
        return segment_id in self.ids()

    def __len__(self) -> int:
        return len(self.ids())

    def __iter__(self) -> Iterator[str]:
        return iter(self.ids())


class MemorySegmentStore(SegmentStore):
    """Keep payloads in process memory only."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._payloads: dict[str, bytes] = {}

    def put(self, segment_id: str, filename: str, payload: bytes) -> None:
        with self._lock:
            self._payloads[segment_id] = bytes(payload)

    def get(self, segment_id: str) -> bytes | None:
        with self._lock:
            return self._payloads.get(segment_id)

    def delete(self, segment_id: str) -> bool:
        with self._lock:
            return self._payloads.pop(segment_id, None) is not None

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._payloads)

    def clear(self) -> None:
        with self._lock:
            self._payloads.clear()

    def __contains__(self, segment_id: object) -> bool:
        with self._lock:
            return segment_id in self._payloads

    def __len__(self) -> int:
        with self._lock:
            return len(self._payloads)


def _marked_name(filename: str, marker: str) -> str:
    path = Path(filename)
    return f"{path.stem}_{marker}{path.suffix}"


def _original_name(marked: str, marker: str) -> str:
    path = Path(marked)
    suffix = f"_{marker}"
    stem = path.stem[: -len(suffix)] if path.stem.endswith(suffix) else path.stem
    return f"{stem}{path.suffix}"


def _write_atomic(path: Path, payload: bytes) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("wb") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class EncryptedFileSegmentStore(SegmentStore):
    """Persist payloads as ``IV || ciphertext`` files under ``encrypted/``.

    With ``keep_decrypted_copy`` each write is validated by decrypting the
    stored blob into ``decrypted/<stem>_decrypted.<ext>``.
    """

    def __init__(
        self,
        root_dir: str | os.PathLike[str],
        crypto: CryptoTransform,
        *,
        keep_decrypted_copy: bool = True,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.encrypted_dir = self.root_dir / ENCRYPTED_DIRNAME
        self.decrypted_dir = self.root_dir / DECRYPTED_DIRNAME
        self.keep_decrypted_copy = keep_decrypted_copy
        self._crypto = crypto
        self._lock = threading.Lock()
        self._index: dict[str, str] = {}
        self.encrypted_dir.mkdir(parents=True, exist_ok=True)
        if keep_decrypted_copy:
            self.decrypted_dir.mkdir(parents=True, exist_ok=True)

    def encrypted_path(self, filename: str) -> Path:
        return self.encrypted_dir / _marked_name(filename, "encrypted")

    def decrypted_path(self, filename: str) -> Path:
        return self.decrypted_dir / _marked_name(filename, "decrypted")

    def put(self, segment_id: str, filename: str, payload: bytes) -> None:
        blob = self._crypto.encrypt(payload)
        encrypted_path = self.encrypted_path(filename)
        with self._lock:
            _write_atomic(encrypted_path, blob)
            self._index[segment_id] = filename
        log.info("saved encrypted segment %s", encrypted_path)
        if self.keep_decrypted_copy:
            decrypted_path = self.decrypted_path(filename)
            _write_atomic(decrypted_path, self._crypto.decrypt(blob))
            log.debug("saved decrypted copy %s", decrypted_path)

    def get(self, segment_id: str) -> bytes | None:
        with self._lock:
            filename = self._index.get(segment_id)
        if filename is None:
            return None
        path = self.encrypted_path(filename)
        try:
            blob = path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            return self._crypto.decrypt(blob)
        except CryptoError as exc:
            log.error("cannot decrypt stored segment %s: %s", path, exc)
            return None

    def delete(self, segment_id: str) -> bool:
        with self._lock:
            filename = self._index.pop(segment_id, None)
        if filename is None:
            return False
        for path in (self.encrypted_path(filename), self.decrypted_path(filename)):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                log.warning("failed to remove %s: %s", path, exc)
                continue
            log.debug("deleted local file %s", path)
        return True

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._index)

    def filename_for(self, segment_id: str) -> str | None:
        with self._lock:
            return self._index.get(segment_id)

    def recover(self) -> list[SegmentDescriptor]:
        """Adopt encrypted files left behind by an earlier process."""

        with self._lock:
            known = set(self._index.values())
        candidates = []
        for path in self.encrypted_dir.iterdir():
            if not path.is_file() or path.suffix == ".tmp":
                continue
            original = _original_name(path.name, "encrypted")
            if original in known:
                continue
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            candidates.append((mtime, original))

        recovered: list[SegmentDescriptor] = []
        for mtime, original in sorted(candidates):
            segment_id = new_segment_id()
            kind = original.split("_", 1)[0]
            with self._lock:
                self._index[segment_id] = original
            recovered.append(
                SegmentDescriptor(
                    id=segment_id,
                    filename=original,
                    created_at=datetime.fromtimestamp(mtime, tz=timezone.utc),
                    content_type=content_type_for(kind, Path(original).suffix),
                )
            )
        if recovered:
            log.info("recovered %d stored segment(s) from %s", len(recovered), self.encrypted_dir)
        return recovered
