#!/usr/bin/env python3
# quickbuild/cli.py
"""
quickbuild CLI

How it works:
- loads the package graph (native JSON/YAML, saved `cargo metadata`, or a live manifest)
- each subcommand delegates to the matching module (resolver, description, scheduler, builder, repo)
- rich tables/console for output
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

import yaml
from rich.console import Console
from rich.table import Table

from quickbuild import archive
from quickbuild.builder import Builder
from quickbuild.config import get_config, reload, validate_config
from quickbuild.description import describe, fingerprint
from quickbuild.errors import QuickbuildError
from quickbuild.graph import PackageGraph, PackageId, load_cargo_metadata, load_graph, run_cargo_metadata
from quickbuild.logging import get_logger
from quickbuild.repo import Repo
from quickbuild.resolver import BuildFor, ClosureEntry, closure, recursive_build_time_deps
from quickbuild.scheduler import Scheduler
from quickbuild.toolchain import Toolchain

logger = get_logger("cli")
console = Console()

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

# -----------------------
# Inputs
# -----------------------
def _load_graph(args) -> PackageGraph:
    if args.graph:
        return load_graph(args.graph)
    if args.cargo_metadata:
        return load_cargo_metadata(args.cargo_metadata)
    return run_cargo_metadata(args.manifest_path or "Cargo.toml", Toolchain.from_config())

def _root(graph: PackageGraph, selector: str) -> PackageId:
    name, _, version = selector.partition("@")
    return graph.find(name, version or None)

def _initial(args) -> BuildFor:
    return BuildFor.HOST if getattr(args, "host", False) else BuildFor.TARGET

# -----------------------
# Commands
# -----------------------
def cmd_build(args) -> int:
    cfg = get_config()
    graph = _load_graph(args)
    root = _root(graph, args.package)
    repo = Repo.from_config(cfg)
    print_info(f"cache: {repo.tarball_dir}")
    builder = Builder.from_config(graph, repo, cfg)
    if args.keep_scratch:
        builder.keep_scratch = True
    sched = Scheduler.from_config(graph, repo, builder, cfg)
    if args.workers:
        sched.workers = args.workers
    report = sched.build_missing_packages(root, _initial(args))
    print_ok(f"{root}: {len(report.built)} built, {len(report.cached)} reused, {len(report.waves)} waves")
    if args.unpack_into:
        stamps = builder.install_dependencies(root, args.unpack_into, _initial(args))
        print_ok(f"unpacked {len(stamps)} entries into {args.unpack_into}")
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    return 0

def cmd_plan(args) -> int:
    graph = _load_graph(args)
    root = _root(graph, args.package)
    waves = Scheduler(graph, Repo.from_config(), builder=None).plan(root, _initial(args))
    table = Table(title=f"Build waves for {root}")
    table.add_column("wave")
    table.add_column("entries")
    for i, wave in enumerate(waves, 1):
        table.add_row(str(i), ", ".join(str(e) for e in wave))
    console.print(table)
    return 0

def cmd_closure(args) -> int:
    graph = _load_graph(args)
    root = _root(graph, args.package)
    if args.build_deps_only:
        for pid in sorted(recursive_build_time_deps(graph, root)):
            console.print(str(pid))
        return 0
    table = Table(title=f"Closure of {root}")
    table.add_column("package")
    table.add_column("build for")
    table.add_column("features")
    for e in sorted(closure(graph, root, _initial(args))):
        table.add_row(str(e.package), str(e.build_for), ", ".join(graph.features(e.package)))
    console.print(table)
    return 0

def cmd_fingerprint(args) -> int:
    graph = _load_graph(args)
    root = _root(graph, args.package)
    desc = describe(graph, ClosureEntry(root, _initial(args)))
    if args.show_descriptor:
        console.print(desc.text, markup=False, highlight=False)
    print(fingerprint(desc))
    return 0

def cmd_graph(args) -> int:
    data = _load_graph(args).to_dict()
    if args.format == "yaml":
        print(yaml.safe_dump(data, sort_keys=False), end="")
    else:
        print(json.dumps(data, indent=2))
    return 0

def cmd_unpack(args) -> int:
    repo = Repo.from_config()
    with repo.read(args.fingerprint) as fh:
        stamps = archive.unpack(fh, args.dest)
    print_ok(f"unpacked {len(stamps)} entries into {args.dest}")
    return 0

def cmd_repo(args) -> int:
    repo = Repo.from_config()
    if args.repo_cmd == "list":
        table = Table(title=f"Cache {repo.tarball_dir}")
        table.add_column("fingerprint")
        table.add_column("build (s)", justify="right")
        for fp in repo.entries():
            try:
                secs = f"{repo.read_stats(fp).get('build_duration', 0.0):.1f}"
            except QuickbuildError:
                secs = "-"
            table.add_row(fp, secs)
        console.print(table)
        return 0
    if args.repo_cmd == "has":
        present = repo.has(args.fingerprint)
        print("yes" if present else "no")
        return 0 if present else 1
    if args.repo_cmd == "stats":
        print(json.dumps(repo.read_stats(args.fingerprint), indent=2, sort_keys=True))
        return 0
    if args.repo_cmd == "search":
        hits = repo.find_file(args.path)
        for fp in hits:
            print(repo.tarball_path(fp))
        if not hits:
            print_warn(f"{args.path} not found in any cached archive")
        return 0 if hits else 1
    raise ValueError(f"unknown repo subcommand {args.repo_cmd}")

def cmd_config(args) -> int:
    cfg = get_config()
    if args.validate:
        ok, issues = validate_config(cfg)
        for issue in issues:
            print_warn(issue)
        if ok:
            print_ok(f"config ok ({cfg.path or 'defaults'})")
        return 0 if ok else 1
    print(json.dumps(cfg.as_dict(), indent=2, ensure_ascii=False))
    return 0

# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="quickbuild", description="Per-subtree build cache for cargo dependency trees")
    ap.add_argument("--config", help="config file (YAML or JSON)")
    src = ap.add_mutually_exclusive_group()
    src.add_argument("--graph", help="native package graph (JSON/YAML)")
    src.add_argument("--cargo-metadata", help="saved `cargo metadata --format-version 1` output")
    src.add_argument("--manifest-path", help="Cargo.toml to run `cargo metadata` on (default ./Cargo.toml)")
    sub = ap.add_subparsers(dest="cmd")

    def with_root(p):
        p.add_argument("package", help="NAME or NAME@VERSION")
        p.add_argument("--host", action="store_true", help="classify the root as a host build")
        return p

    p_build = with_root(sub.add_parser("build", help="build every missing dependency subtree"))
    p_build.add_argument("--unpack-into", metavar="DIR", help="unpack the cached dependencies into DIR afterwards")
    p_build.add_argument("--workers", type=int, help="parallel builds per wave")
    p_build.add_argument("--keep-scratch", action="store_true")
    p_build.add_argument("--json", action="store_true", help="print the schedule report as JSON")

    with_root(sub.add_parser("plan", help="show build waves"))

    p_closure = with_root(sub.add_parser("closure", help="list closure entries"))
    p_closure.add_argument("--build-deps-only", action="store_true")

    p_fp = with_root(sub.add_parser("fingerprint", help="print the cache key"))
    p_fp.add_argument("--show-descriptor", action="store_true")

    p_graph = sub.add_parser("graph", help="export the loaded graph in the native format")
    p_graph.add_argument("--format", choices=("json", "yaml"), default="json")

    p_unpack = sub.add_parser("unpack", help="extract one cached archive")
    p_unpack.add_argument("fingerprint")
    p_unpack.add_argument("dest")

    p_repo = sub.add_parser("repo", help="inspect the cache")
    repo_sub = p_repo.add_subparsers(dest="repo_cmd", required=True)
    repo_sub.add_parser("list")
    repo_sub.add_parser("has").add_argument("fingerprint")
    repo_sub.add_parser("stats").add_argument("fingerprint")
    repo_sub.add_parser("search").add_argument("path")

    p_config = sub.add_parser("config", help="print or validate configuration")
    p_config.add_argument("--validate", action="store_true")

    return ap

COMMANDS = {
    "build": cmd_build,
    "plan": cmd_plan,
    "closure": cmd_closure,
    "fingerprint": cmd_fingerprint,
    "graph": cmd_graph,
    "unpack": cmd_unpack,
    "repo": cmd_repo,
    "config": cmd_config,
}

def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 2
    try:
        if args.config:
            reload(args.config)
        return COMMANDS[args.cmd](args)
    except QuickbuildError as e:
        logger.debug("command failed: %s", json.dumps(e.to_dict(), default=str))
        print_err(str(e))
        return 1
    except (OSError, ValueError) as e:
        print_err(f"Command failed: {e}")
        return 1

if __name__ == "__main__":
    sys.exit(main())
