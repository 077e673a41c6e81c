import json

import pytest

from quickbuild.errors import GraphInconsistency
from quickbuild.graph import DepKind, PackageGraph, PackageId, load_cargo_metadata, load_graph

from conftest import GEN, LEAF, MID, ROOT

CARGO_METADATA = {
    "packages": [
        {
            "id": "app 0.1.0 (path+file:///work/app)",
            "name": "app",
            "version": "0.1.0",
            "source": None,
            "targets": [{"kind": ["lib"], "name": "app"}],
        },
        {
            "id": "serde 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)",
            "name": "serde",
            "version": "1.0.0",
            "source": "registry+https://github.com/rust-lang/crates.io-index",
            "targets": [{"kind": ["lib"], "name": "serde"}],
        },
        {
            "id": "serde_derive 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)",
            "name": "serde_derive",
            "version": "1.0.0",
            "source": "registry+https://github.com/rust-lang/crates.io-index",
            "targets": [{"kind": ["proc-macro"], "name": "serde_derive"}],
        },
        {
            "id": "cc 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)",
            "name": "cc",
            "version": "1.0.0",
            "source": "registry+https://github.com/rust-lang/crates.io-index",
            "targets": [{"kind": ["lib"], "name": "cc"}],
        },
    ],
    "resolve": {
        "root": "app 0.1.0 (path+file:///work/app)",
        "nodes": [
            {
                "id": "app 0.1.0 (path+file:///work/app)",
                "deps": [
                    {"pkg": "serde 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)", "dep_kinds": [{"kind": None}]},
                    {"pkg": "cc 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)", "dep_kinds": [{"kind": "build"}]},
                ],
                "features": [],
            },
            {
                "id": "serde 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)",
                "deps": [
                    {"pkg": "serde_derive 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)", "dep_kinds": [{"kind": None}]},
                ],
                "features": ["derive", "std"],
            },
            {"id": "serde_derive 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)", "deps": [], "features": ["default"]},
            {"id": "cc 1.0.0 (registry+https://github.com/rust-lang/crates.io-index)", "deps": [], "features": []},
        ],
    },
}


def test_dependencies_by_kind(graph):
    assert graph.dependencies(ROOT, DepKind.NORMAL) == [MID]
    assert graph.dependencies(ROOT, DepKind.BUILD) == [GEN]
    assert graph.dependencies(LEAF, DepKind.NORMAL) == []


def test_feature_queries(graph):
    assert graph.has_feature(LEAF, "std")
    assert not graph.has_feature(MID, "std")
    assert graph.is_host_generator(GEN)


def test_find():
    g = PackageGraph()
    g.add_package(PackageId("dup", "1.0.0"))
    g.add_package(PackageId("dup", "2.0.0"))
    assert g.find("dup", "2.0.0") == PackageId("dup", "2.0.0")
    with pytest.raises(GraphInconsistency):
        g.find("dup")
    with pytest.raises(GraphInconsistency):
        g.find("missing")


def test_duplicate_package_rejected(graph):
    with pytest.raises(GraphInconsistency):
        graph.add_package(LEAF)


def test_native_round_trip(graph, tmp_path):
    path = tmp_path / "graph.json"
    path.write_text(json.dumps(graph.to_dict()))
    again = load_graph(str(path))
    assert again.to_dict() == graph.to_dict()
    assert again.dependencies(ROOT, DepKind.BUILD) == [GEN]


def test_native_yaml(tmp_path):
    path = tmp_path / "graph.yaml"
    path.write_text(
        "packages:\n"
        "  - name: app\n"
        "    version: 0.1.0\n"
        "    features: [fancy]\n"
        "    dependencies:\n"
        "      - {name: extra, feature: fancy}\n"
        "      - {name: tool, kind: build}\n"
        "  - {name: extra, version: 1.0.0}\n"
        "  - {name: tool, version: 2.0.0}\n"
    )
    g = load_graph(str(path))
    app = g.find("app")
    assert g.dependencies(app, DepKind.NORMAL) == [g.find("extra")]
    assert g.dependencies(app, DepKind.BUILD) == [g.find("tool")]


def test_unknown_dep_kind():
    with pytest.raises(GraphInconsistency):
        DepKind.parse("weird")


def test_from_cargo_metadata(tmp_path):
    path = tmp_path / "metadata.json"
    path.write_text(json.dumps(CARGO_METADATA))
    g = load_cargo_metadata(str(path))
    app = g.find("app")
    serde = g.find("serde")
    assert app.source == ""
    assert serde.source.startswith("registry+")
    assert g.dependencies(app, DepKind.NORMAL) == [serde]
    assert g.dependencies(app, DepKind.BUILD) == [g.find("cc")]
    assert g.is_host_generator(g.find("serde_derive"))
    assert g.features(serde) == ("derive", "std")


def test_cargo_metadata_without_resolve():
    with pytest.raises(GraphInconsistency):
        PackageGraph.from_cargo_metadata({"packages": []})
