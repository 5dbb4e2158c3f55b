"""
Install a node catalog into the id_nodes graph.

  python migrate.py catalog.json                 # FalkorDB from IDN_* / FALKORDB_* env
  python migrate.py catalog.json --dry-run       # validate only
  python migrate.py catalog.json --config config.json

The catalog is validated before anything is written; a malformed
catalog (asymmetric back-references, dangling names, self-conflicts)
aborts with exit status 2. Nodes present in the graph but missing from
the catalog are left in place and reported, since grants may still
reference them.

A running service keeps its loaded graph until POST /graph/reload. User
snapshots are not recomputed here either: call POST /users/{id}/refresh or
let the next mutation of each user pick up the new graph.
"""

import argparse
import logging
import sys
from dataclasses import replace

from id_nodes.core.config import load_settings
from id_nodes.core.errors import StructuralGraphError
from id_nodes.graph.falkordb_backend import FalkorPropertyGraph
from id_nodes.nodes.catalog import install_catalog, load_catalog, load_node_graph


def migrate_catalog(graph, catalog, dry_run=False):
    """Install `catalog` into `graph`. Returns a stats dict."""
    warnings = catalog.ensure_valid()
    existing = load_node_graph(graph)

    old_ids = set(existing.node_ids())
    new_ids = set(catalog.node_ids())
    stats = {
        "nodes": len(catalog),
        "terms": len(catalog.terms),
        "added": sorted(new_ids - old_ids),
        "updated": sorted(new_ids & old_ids),
        "orphaned": sorted(old_ids - new_ids),
        "cycles": [w.detail for w in warnings],
        "dry_run": dry_run,
    }
    if dry_run:
        return stats

    install_catalog(graph, catalog)

    # Read back what was written and validate it as the service will.
    installed = load_node_graph(graph)
    installed.ensure_valid()
    stats["installed"] = len(installed)
    return stats


def main(argv=None):
    parser = argparse.ArgumentParser(description="Install a node catalog into FalkorDB")
    parser.add_argument("catalog", help="catalog JSON file")
    parser.add_argument("--config", help="config.json (default: discover, then environment)")
    parser.add_argument("--dry-run", action="store_true", help="validate without writing")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

    settings = load_settings(args.config)
    settings = replace(settings, backend="falkordb")

    try:
        catalog = load_catalog(args.catalog)
    except StructuralGraphError as e:
        print(f"Catalog rejected: {e}")
        return 2

    graph = FalkorPropertyGraph.from_settings(settings)
    print(f"Target: FalkorDB {settings.falkordb_host}:{settings.falkordb_port}/{settings.falkordb_graph}")

    try:
        stats = migrate_catalog(graph, catalog, dry_run=args.dry_run)
    except StructuralGraphError as e:
        print(f"Catalog rejected: {e}")
        return 2

    print(f"  nodes: {stats['nodes']}  terms: {stats['terms']}")
    print(f"  added: {stats['added']}")
    print(f"  updated: {stats['updated']}")
    if stats["orphaned"]:
        print(f"  orphaned (left in place): {stats['orphaned']}")
    for cycle in stats["cycles"]:
        print(f"  cycle: {cycle}")
    print("Dry run, nothing written." if args.dry_run else f"Installed {stats['installed']} nodes.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
