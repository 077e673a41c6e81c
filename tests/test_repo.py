import json
import threading

import pytest

from quickbuild.archive import pack_into
from quickbuild.config import load
from quickbuild.errors import CacheNotFound
from quickbuild.repo import Repo
from quickbuild.stats import Stats

FP = "leaf-1.0.0-" + "ab" * 32
STATS = {"init_duration": 0.5, "untar_duration": 0.0, "build_duration": 2.0, "tar_duration": 0.25}


def _commit(repo, fp=FP, payload=b"archive bytes"):
    fh = repo.begin_write(fp)
    fh.write(payload)
    repo.commit(fp, STATS)


def test_creates_directory(tmp_path):
    Repo(tmp_path / "a" / "b")
    assert (tmp_path / "a" / "b").is_dir()


def test_has_and_read(repo):
    assert not repo.has(FP)
    _commit(repo)
    assert repo.has(FP)
    with repo.read(FP) as fh:
        assert fh.read() == b"archive bytes"


def test_read_missing(repo):
    with pytest.raises(CacheNotFound) as exc:
        repo.read(FP)
    assert exc.value.details["path"].endswith(f"{FP}.tar")


def test_commit_layout_and_stats(repo):
    _commit(repo)
    names = sorted(p.name for p in repo.tarball_dir.iterdir())
    assert names == [f"{FP}.stats.json", f"{FP}.tar"]
    assert json.loads((repo.tarball_dir / f"{FP}.stats.json").read_text()) == STATS
    assert repo.read_stats(FP) == STATS


def test_in_flight_write_is_invisible(repo):
    fh = repo.begin_write(FP)
    fh.write(b"partial")
    assert not repo.has(FP)
    assert (repo.tarball_dir / f"{FP}.tar.temp").exists()
    repo.abort(FP)
    assert list(repo.tarball_dir.iterdir()) == []


def test_commit_accepts_stats_object(repo):
    ticks = iter([0.0, 1.0, 1.5, 4.0, 4.5])
    stats = Stats(clock=lambda: next(ticks))
    stats.init_done()
    stats.untar_done()
    stats.build_done()
    stats.tar_done()
    fh = repo.begin_write(FP)
    fh.write(b"x")
    repo.commit(FP, stats)
    assert repo.read_stats(FP) == {"init_duration": 1.0, "untar_duration": 0.5, "build_duration": 2.5, "tar_duration": 0.5}


def test_writers_of_same_fingerprint_are_serialized(repo):
    repo.begin_write(FP).write(b"first")
    order = []

    def second():
        fh = repo.begin_write(FP)
        order.append("second")
        fh.write(b"second")
        repo.commit(FP, STATS)

    t = threading.Thread(target=second)
    t.start()
    t.join(0.2)
    order.append("first")
    repo.commit(FP, STATS)
    t.join(5)
    assert order == ["first", "second"]
    with repo.read(FP) as fh:
        assert fh.read() == b"second"


def test_entries_and_find_file(repo, tmp_path):
    src = tmp_path / "src"
    (src / "target" / "debug").mkdir(parents=True)
    (src / "target" / "debug" / "libleaf.rlib").write_text("leaf")
    pack_into(repo.begin_write(FP), src, subdir="target")
    repo.commit(FP, STATS)
    assert repo.entries() == [FP]
    assert repo.find_file("target/debug/libleaf.rlib") == [FP]
    assert repo.find_file("target/debug/nothing") == []


def test_from_config_uses_env_override(tmp_path):
    cfg = load(environ={"CARGO_QUICK_TARBALL_DIR": str(tmp_path / "envcache")})
    assert Repo.from_config(cfg).tarball_dir == tmp_path / "envcache"
