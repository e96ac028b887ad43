# artifacts.py
from __future__ import annotations

import io
import json
import logging
import os
import shutil
import tarfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional
from urllib.parse import quote

from .errors import ArtifactExistsError
from .model import ArtifactPolicy
from .rules import compile_glob

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# An artifact is the file set a job hands over at completion:
#   key = (project, job, ref, commit_sha)
#
# Once written a key is immutable: a second put for the same key fails,
# it never blocks and never overwrites. Expiry removes a key atomically,
# so readers see either the whole artifact or nothing.
#
# Cross-pipeline consumers ask for (project, ref, job) and get the most
# recent non-expired artifact, whatever the sha.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACTS_DIR = ".stageflow/artifacts"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ArtifactKey:
    job: str
    ref: str
    sha: str
    project: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {"project": self.project, "job": self.job, "ref": self.ref, "sha": self.sha}


@dataclass(frozen=True)
class StoredArtifact:
    """Read-only view of a stored file set."""
    key: ArtifactKey
    created_at: datetime
    expires_at: Optional[datetime]
    files: Mapping[str, bytes] = field(default_factory=dict)
    name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def manifest(self) -> dict:
        return {
            "key": self.key.as_dict(),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "name": self.name,
            "files": sorted(self.files),
        }


def select_files(files: Mapping[str, bytes], paths: Iterable[str]) -> Dict[str, bytes]:
    """
    Keep files matching the policy's path globs. A plain directory entry
    ("artifacts/") keeps everything under it.
    """
    patterns = []
    for p in paths:
        p = p[2:] if p.startswith("./") else p
        base = p.rstrip("/")
        patterns.append(compile_glob(base))
        patterns.append(compile_glob(base + "/**"))
    return {path: data for path, data in files.items() if any(rx.match(path) for rx in patterns)}


class ArtifactStore:
    """
    Interface shared by the in-memory and on-disk stores.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def _build(self, key: ArtifactKey, files: Mapping[str, bytes], policy: ArtifactPolicy) -> StoredArtifact:
        created = self.clock()
        expires = created + policy.expire_in if policy.expire_in is not None else None
        return StoredArtifact(key=key, created_at=created, expires_at=expires, files=files, name=policy.name)

    def put(self, key: ArtifactKey, files: Mapping[str, bytes], policy: ArtifactPolicy) -> StoredArtifact:
        raise NotImplementedError

    def get(self, key: ArtifactKey) -> Optional[StoredArtifact]:
        raise NotImplementedError

    def keys(self) -> List[ArtifactKey]:
        raise NotImplementedError

    def expire(self, now: Optional[datetime] = None) -> List[ArtifactKey]:
        raise NotImplementedError

    def latest(self, project: str, ref: str, job: str) -> Optional[StoredArtifact]:
        """
        Most recent non-expired artifact for (project, ref, job).
        Ties on a floating ref are broken by created_at.
        """
        now = self.clock()
        best: Optional[StoredArtifact] = None
        for key in self.keys():
            if (key.project, key.ref, key.job) != (project, ref, job):
                continue
            art = self.get(key)
            if art is None or art.is_expired(now):
                continue
            if best is None or art.created_at > best.created_at:
                best = art
        return best


class MemoryArtifactStore(ArtifactStore):
    """
    Process-local store.

    Disjoint keys never contend: put relies on dict.setdefault being atomic,
    expire on dict.pop. Only the loser of a same-key race sees an error.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock)
        self._entries: Dict[ArtifactKey, StoredArtifact] = {}

    def put(self, key: ArtifactKey, files: Mapping[str, bytes], policy: ArtifactPolicy) -> StoredArtifact:
        art = self._build(key, files, policy)
        winner = self._entries.setdefault(key, art)
        if winner is not art:
            raise ArtifactExistsError(f"artifact already stored for {key}")
        log.debug("stored artifact %s (%d files)", key, len(art.files))
        return art

    def get(self, key: ArtifactKey) -> Optional[StoredArtifact]:
        art = self._entries.get(key)
        if art is None or art.is_expired(self.clock()):
            return None
        return art

    def keys(self) -> List[ArtifactKey]:
        return list(self._entries.keys())

    def expire(self, now: Optional[datetime] = None) -> List[ArtifactKey]:
        now = now or self.clock()
        removed = []
        for key, art in list(self._entries.items()):
            if art.is_expired(now) and self._entries.pop(key, None) is not None:
                removed.append(key)
        if removed:
            log.info("expired %d artifact(s)", len(removed))
        return removed


class FileArtifactStore(ArtifactStore):
    """
    File-based store:
      root/
        <project>/<job>/<ref>/<sha>/
          files.tar.gz
          manifest.json
        .staging/   (being written)
        .trash/     (being deleted)

    A key directory is assembled under .staging and published with a single
    rename; a rename onto an existing key directory fails, which is how the
    second writer loses. Expiry renames the key directory into .trash first.
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACTS_DIR, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock)
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / ".staging").mkdir(exist_ok=True)
        (self.root / ".trash").mkdir(exist_ok=True)

    @staticmethod
    def _segment(value: str) -> str:
        # injective: quote() escapes "/" and "%"; an escaped leading dot keeps
        # segments off ".", ".." and the .staging/.trash areas. quote() never
        # yields a bare "%", so it marks the empty value.
        seg = quote(value, safe="")
        if seg.startswith("."):
            seg = "%2E" + seg[1:]
        return seg or "%"

    def key_dir(self, key: ArtifactKey) -> Path:
        return self.root / self._segment(key.project) / self._segment(key.job) / self._segment(key.ref) / self._segment(key.sha)

    def put(self, key: ArtifactKey, files: Mapping[str, bytes], policy: ArtifactPolicy) -> StoredArtifact:
        final = self.key_dir(key)
        if final.exists():
            raise ArtifactExistsError(f"artifact already stored for {key}")

        art = self._build(key, files, policy)
        staging = self.root / ".staging" / uuid.uuid4().hex
        staging.mkdir()
        try:
            with tarfile.open(str(staging / "files.tar.gz"), mode="w:gz") as tar:
                for rel, data in sorted(art.files.items()):
                    info = tarfile.TarInfo(name=rel)
                    info.size = len(data)
                    info.mtime = int(art.created_at.timestamp())
                    tar.addfile(info, fileobj=io.BytesIO(data))
            (staging / "manifest.json").write_text(
                json.dumps(art.manifest(), sort_keys=True, indent=2), encoding="utf-8"
            )
            final.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.rename(staging, final)
            except OSError as e:
                raise ArtifactExistsError(f"artifact already stored for {key}") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        log.debug("stored artifact %s at %s", key, final)
        return art

    def _read(self, key: ArtifactKey, directory: Path) -> Optional[StoredArtifact]:
        try:
            manifest = json.loads((directory / "manifest.json").read_text(encoding="utf-8"))
            files: Dict[str, bytes] = {}
            with tarfile.open(str(directory / "files.tar.gz"), mode="r:gz") as tar:
                for member in tar.getmembers():
                    if not member.isfile():
                        continue
                    fh = tar.extractfile(member)
                    if fh is not None:
                        files[member.name] = fh.read()
        except FileNotFoundError:
            # expired (or never completed) between the existence check and the read
            return None
        expires = manifest.get("expires_at")
        return StoredArtifact(
            key=key,
            created_at=datetime.fromisoformat(manifest["created_at"]),
            expires_at=datetime.fromisoformat(expires) if expires else None,
            files=files,
            name=manifest.get("name"),
        )

    def get(self, key: ArtifactKey) -> Optional[StoredArtifact]:
        art = self._read(key, self.key_dir(key))
        if art is None or art.is_expired(self.clock()):
            return None
        return art

    def keys(self) -> List[ArtifactKey]:
        out = []
        for manifest in sorted(self.root.glob("*/*/*/*/manifest.json")):
            try:
                data = json.loads(manifest.read_text(encoding="utf-8"))
            except FileNotFoundError:
                continue
            k = data["key"]
            out.append(ArtifactKey(job=k["job"], ref=k["ref"], sha=k["sha"], project=k["project"]))
        return out

    def expire(self, now: Optional[datetime] = None) -> List[ArtifactKey]:
        now = now or self.clock()
        removed = []
        for key in self.keys():
            directory = self.key_dir(key)
            art = self._read(key, directory)
            if art is None or not art.is_expired(now):
                continue
            trash = self.root / ".trash" / uuid.uuid4().hex
            try:
                os.rename(directory, trash)
            except FileNotFoundError:
                continue  # another sweep got there first
            shutil.rmtree(trash, ignore_errors=True)
            removed.append(key)
        if removed:
            log.info("expired %d artifact(s) under %s", len(removed), self.root)
        return removed
