import re

import pytest

from quickbuild.description import Descriptor, describe, descriptor, fingerprint, fingerprint_of
from quickbuild.graph import PackageGraph, PackageId
from quickbuild.resolver import BuildFor, ClosureEntry, closure

from conftest import GEN, LEAF, MID, ROOT, example_graph


def test_descriptor_text(graph):
    desc = describe(graph, ClosureEntry(ROOT, BuildFor.TARGET))
    assert desc.text == (
        "# root 0.0.1\n"
        "[target]\n"
        "leaf@1.0.0, [std]\n"
        "mid@0.2.0, []\n"
        "root@0.0.1, []\n"
        "[host]\n"
        "gen@0.1.0, []\n"
    )


def test_fingerprint_format(graph):
    fp = fingerprint_of(graph, ClosureEntry(MID, BuildFor.TARGET))
    assert re.fullmatch(r"mid-0\.2\.0-[0-9a-f]{64}", fp)


def test_fingerprint_independent_of_construction_order():
    a, b = example_graph(), example_graph(reverse=True)
    for entry in (ClosureEntry(MID, BuildFor.TARGET), ClosureEntry(GEN, BuildFor.HOST), ClosureEntry(ROOT, BuildFor.TARGET)):
        assert fingerprint_of(a, entry) == fingerprint_of(b, entry)


def test_descriptor_independent_of_iteration_order(graph):
    entries = closure(graph, ROOT)
    forward = descriptor(sorted(entries), graph, ROOT)
    backward = descriptor(sorted(entries, reverse=True), graph.features, ROOT)
    assert forward == backward
    assert fingerprint(forward) == fingerprint(backward)


def test_features_change_fingerprint(graph):
    other = PackageGraph()
    other.add_package(LEAF, ["std", "alloc"])
    a = fingerprint_of(graph, ClosureEntry(LEAF, BuildFor.TARGET))
    b = fingerprint_of(other, ClosureEntry(LEAF, BuildFor.TARGET))
    assert a != b


def test_classification_changes_fingerprint(graph):
    assert fingerprint_of(graph, ClosureEntry(LEAF, BuildFor.TARGET)) != fingerprint_of(graph, ClosureEntry(LEAF, BuildFor.HOST))


def test_source_does_not_leak():
    g = PackageGraph()
    pid = PackageId("local", "0.1.0", "path+file:///home/someone/src/local")
    g.add_package(pid)
    desc = describe(g, ClosureEntry(pid, BuildFor.TARGET))
    assert "/home/someone" not in desc.text


def test_manifest_deps(graph):
    desc = describe(graph, ClosureEntry(ROOT, BuildFor.TARGET))
    manifest = desc.manifest_deps()
    target, build = manifest.split("[build-dependencies]\n")
    assert target.startswith("[dependencies]\n")
    assert 'leaf_1_0_0 = { package = "leaf", version = "=1.0.0", features = ["std"], default-features = false }' in target
    assert 'gen_0_1_0 = { package = "gen", version = "=0.1.0", features = [], default-features = false }' in build
    assert "gen_0_1_0" not in target


def test_descriptor_is_frozen(graph):
    desc = Descriptor.from_closure(LEAF, [ClosureEntry(LEAF, BuildFor.TARGET)], graph.features)
    with pytest.raises(AttributeError):
        desc.package = MID
