# tests/test_artifacts.py
"""In-memory and on-disk artifact stores."""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from stageflow.artifacts import ArtifactKey, FileArtifactStore, MemoryArtifactStore, select_files
from stageflow.errors import ArtifactExistsError
from stageflow.model import ArtifactPolicy


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path, clock):
    if request.param == "memory":
        return MemoryArtifactStore(clock=clock)
    return FileArtifactStore(tmp_path / "artifacts", clock=clock)


def policy(**kw):
    return ArtifactPolicy(paths=("dist/",), **kw)


def test_put_and_get(store):
    key = ArtifactKey(job="build", ref="main", sha="abc", project="group/app")
    store.put(key, {"dist/app.whl": b"wheel"}, policy(name="wheel"))

    art = store.get(key)
    assert art.files == {"dist/app.whl": b"wheel"}
    assert art.name == "wheel"
    assert store.keys() == [key]
    with pytest.raises(TypeError):
        art.files["dist/other"] = b""


def test_keys_are_immutable(store):
    key = ArtifactKey(job="build", ref="main", sha="abc")
    store.put(key, {"a": b"1"}, policy())
    with pytest.raises(ArtifactExistsError):
        store.put(key, {"a": b"2"}, policy())
    assert store.get(key).files == {"a": b"1"}


def test_expiry_is_per_key(store, clock):
    short = ArtifactKey(job="build", ref="main", sha="1")
    long_ = ArtifactKey(job="build", ref="main", sha="2")
    forever = ArtifactKey(job="build", ref="main", sha="3")
    store.put(short, {"a": b"1"}, policy(expire_in=timedelta(hours=1)))
    store.put(long_, {"a": b"2"}, policy(expire_in=timedelta(days=7)))
    store.put(forever, {"a": b"3"}, policy(expire_in=None))

    clock.advance(hours=2)
    assert store.get(short) is None  # expired keys are invisible before the sweep
    assert store.expire() == [short]
    assert store.get(long_) is not None
    assert set(store.keys()) == {long_, forever}

    clock.advance(days=3650)
    assert store.expire() == [long_]
    assert store.get(forever) is not None


def test_latest_picks_newest_non_expired(store, clock):
    old = ArtifactKey(job="build", ref="main", sha="old", project="p")
    new = ArtifactKey(job="build", ref="main", sha="new", project="p")
    other_ref = ArtifactKey(job="build", ref="dev", sha="x", project="p")
    store.put(old, {"v": b"old"}, policy(expire_in=timedelta(days=30)))
    clock.advance(minutes=5)
    store.put(new, {"v": b"new"}, policy(expire_in=timedelta(hours=1)))
    store.put(other_ref, {"v": b"dev"}, policy())

    assert store.latest("p", "main", "build").key == new
    clock.advance(hours=2)
    assert store.latest("p", "main", "build").key == old
    assert store.latest("p", "main", "test") is None


def test_file_store_layout(tmp_path, clock):
    store = FileArtifactStore(tmp_path, clock=clock)
    key = ArtifactKey(job="build", ref="feature/x", sha="abc", project="group/app")
    store.put(key, {"dist/app.whl": b"wheel"}, policy())

    directory = store.key_dir(key)
    assert directory == tmp_path.resolve() / "group%2Fapp" / "build" / "feature%2Fx" / "abc"
    assert (directory / "manifest.json").exists()
    assert (directory / "files.tar.gz").exists()
    assert not any((tmp_path / ".staging").iterdir())

    reopened = FileArtifactStore(tmp_path, clock=clock)
    assert reopened.get(key).files == {"dist/app.whl": b"wheel"}


def test_file_store_segments_never_collide(tmp_path, clock):
    store = FileArtifactStore(tmp_path, clock=clock)
    slash = ArtifactKey(job="build", ref="a/b", sha="abc", project="p")
    escaped = ArtifactKey(job="build", ref="a%2Fb", sha="abc", project="p")
    dots = ArtifactKey(job="build", ref="..", sha="abc", project=".trash")
    store.put(slash, {"f": b"slash"}, policy())
    store.put(escaped, {"f": b"escaped"}, policy())
    store.put(dots, {"f": b"dots"}, policy())

    assert store.get(slash).files == {"f": b"slash"}
    assert store.get(escaped).files == {"f": b"escaped"}
    assert store.get(dots).files == {"f": b"dots"}
    assert store.key_dir(slash) != store.key_dir(escaped)
    assert store.key_dir(dots).parents[3] == tmp_path.resolve()
    assert set(store.keys()) == {slash, escaped, dots}


def test_readers_never_see_a_partly_expired_artifact(store, clock):
    files = {f"dist/part{i}.bin": bytes([i]) * 256 for i in range(24)}
    doomed = [ArtifactKey(job=f"build{i}", ref="main", sha="abc", project="group/app") for i in range(6)]
    kept = ArtifactKey(job="docs", ref="main", sha="abc", project="group/app")
    for key in doomed:
        store.put(key, files, policy(expire_in=timedelta(hours=1)))
    store.put(kept, files, policy(expire_in=None))

    stop = threading.Event()
    ready = threading.Barrier(5)
    seen, errors = [], []

    def read():
        ready.wait()
        while not stop.is_set():
            for key in doomed + [kept]:
                try:
                    art = store.get(key)
                except Exception as e:
                    errors.append(e)
                    continue
                seen.append((key, None if art is None else dict(art.files)))

    readers = [threading.Thread(target=read) for _ in range(4)]
    for t in readers:
        t.start()
    ready.wait()
    try:
        # sweep as of two hours later while readers still see the current time
        removed = store.expire(now=clock.now + timedelta(hours=2))
    finally:
        stop.set()
        for t in readers:
            t.join()

    assert errors == []
    assert set(removed) == set(doomed)
    assert seen
    for key, got in seen:
        if key == kept:
            assert got == files
        else:
            assert got is None or got == files
    assert all(store.get(key) is None for key in doomed)
    assert store.get(kept).files == files


def test_disjoint_keys_written_concurrently(store):
    errors = []

    def put(i):
        try:
            store.put(ArtifactKey(job=f"job{i}", ref="main", sha="abc"), {"f": str(i).encode()}, policy())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=put, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(store.keys()) == 16


def test_same_key_written_concurrently_has_one_winner(store):
    key = ArtifactKey(job="build", ref="main", sha="abc")
    outcomes = []
    barrier = threading.Barrier(8)

    def put(i):
        barrier.wait()
        try:
            store.put(key, {"f": str(i).encode()}, policy())
            outcomes.append("ok")
        except ArtifactExistsError:
            outcomes.append("exists")

    threads = [threading.Thread(target=put, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("exists") == 7


def test_select_files():
    files = {
        "dist/app.whl": b"",
        "dist/sub/x.txt": b"",
        "report.xml": b"",
        "src/app.py": b"",
    }
    assert set(select_files(files, ["dist/"])) == {"dist/app.whl", "dist/sub/x.txt"}
    assert set(select_files(files, ["*.xml", "./src/*.py"])) == {"report.xml", "src/app.py"}
    assert select_files(files, []) == {}
