import json
import os

import pytest

from quickbuild import config


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = config.load(environ={})
    assert cfg.get("cache.dir") == os.path.expanduser("~/tmp/quick")
    assert cfg.get("build.env") == {"CARGO_CACHE_RUSTC_INFO": "0"}
    assert cfg.get("build.offline") is True
    assert cfg.get("scheduler.workers") == 1
    assert cfg.get("no.such.key", "fallback") == "fallback"
    assert config.validate_config(cfg) == (True, [])


def test_env_overrides_cache_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = config.load(environ={"CARGO_QUICK_TARBALL_DIR": str(tmp_path / "tarballs")})
    assert config.get_cache_dir(cfg) == str(tmp_path / "tarballs")


def test_yaml_file_merges_over_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "quickbuild.yaml"
    path.write_text(
        "cache:\n"
        "  dir: ~/elsewhere\n"
        "build:\n"
        "  compiler: cargo build --jobs=4\n"
        "  timeout: '60'\n"
        "scheduler:\n"
        "  workers: 3\n"
    )
    cfg = config.load(environ={})
    assert cfg.path == str(path)
    assert cfg.get("cache.dir") == os.path.expanduser("~/elsewhere")
    assert cfg.get("build.compiler") == ["cargo", "build", "--jobs=4"]
    assert cfg.get("build.timeout") == 60
    assert cfg.get("build.offline_flag") == "--offline"
    assert cfg.get("scheduler.workers") == 3


def test_env_beats_config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "quickbuild.json").write_text(json.dumps({"cache": {"dir": str(tmp_path / "file")}}))
    cfg = config.load(environ={"CARGO_QUICK_TARBALL_DIR": str(tmp_path / "env")})
    assert cfg.get("cache.dir") == str(tmp_path / "env")


def test_config_env_var_points_at_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    other = tmp_path / "custom.yml"
    other.write_text("scheduler:\n  workers: 2\n")
    cfg = config.load(environ={"QUICKBUILD_CONFIG": str(other)})
    assert cfg.get("scheduler.workers") == 2


def test_validation(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "quickbuild.yaml").write_text("bogus: 1\nscheduler:\n  workers: 0\n")
    cfg = config.load(environ={})
    ok, issues = config.validate_config(cfg)
    assert not ok
    assert "Unknown top-level config key: bogus" in issues
    with pytest.raises(ValueError):
        config.load(fatal=True, environ={})


def test_explicit_missing_file():
    with pytest.raises(FileNotFoundError):
        config.load("/nonexistent/quickbuild.yaml", environ={})


def test_reload_notifies_callbacks(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    seen = []
    cb = seen.append
    config.register_watch_callback(cb)
    try:
        config.reload(environ={})
    finally:
        config.unregister_watch_callback(cb)
    assert len(seen) == 1
