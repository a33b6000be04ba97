#!/usr/bin/env python3
"""
chatrelay CLI.

    COMMAND     ALIASES         WHAT IT DOES
    -------     -------         ----------------------------------------
    serve       start, up       Start the API server
    index       ingest          Index a product catalog (JSON) for retrieval
    search      find            Semantic search over the product index
    tap         log, tail       Watch the wire log
"""

import argparse
import json
import sys
from pathlib import Path

from chatrelay import __version__


def _product_index(cfg: dict):
    from chatrelay.storage.backends import make_backend
    from chatrelay.storage.vector_store import ProductIndex

    storage_cfg = cfg["storage"]
    embed_cfg = cfg["embedding"]
    return ProductIndex(
        embedding_model=embed_cfg["model"],
        embedding_url=embed_cfg.get("backend_url") or cfg["backend"]["url"],
        backend=make_backend(
            storage_cfg.get("vector_backend", "chromadb"),
            path=storage_cfg.get("chroma_path", "./data/chroma"),
        ),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the API server."""
    import uvicorn
    from chatrelay.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  chatrelay {__version__} on {host}:{port}")
    print(f"  Backend: {cfg['backend']['url'] or '(not set)'}")
    print(f"  Redis:   {cfg.get('streams', {}).get('redis_url') or '(not set, streams not resumable)'}")
    print()

    uvicorn.run(
        "chatrelay.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def load_products(path: str) -> list[dict]:
    """A catalog file is a JSON list of products, or {"products": [...]}."""
    data = json.loads(Path(path).read_text())
    if isinstance(data, dict):
        data = data.get("products", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of products")
    return data


def cmd_index(args):
    """Embed and index a product catalog."""
    from chatrelay.config import get_config

    try:
        products = load_products(args.file)
    except (OSError, ValueError) as e:
        print(f"  ✗  {e}")
        sys.exit(1)

    index = _product_index(get_config())
    print(f"  Indexing {len(products)} products from {args.file}")
    count = index.upsert_products(products, batch_size=args.batch_size)
    print(f"  ✓  {count} indexed ({index.get_stats()['indexed_products']} total)")


def cmd_search(args):
    """Semantic search over the product index."""
    import asyncio
    from chatrelay.config import get_config

    index = _product_index(get_config())
    query = " ".join(args.query)
    print(f"  Searching for: '{query}'")
    print("  " + "─" * 56)

    hits = asyncio.run(index.search(query, top_k=args.results))
    if not hits:
        print("  No matching products.")
        return

    for i, hit in enumerate(hits, 1):
        score = 1 - hit["distance"]
        price = hit.get("price")
        print(f"  {i}. {hit['name']}  [{hit['product_id']}]  score={score:.3f}")
        print(f"     {hit.get('category') or 'Uncategorized'} · price={price if price is not None else '?'} · stock={hit.get('stock', '?')}")
        if hit.get("description"):
            print(f"     {hit['description'][:120]}")
        print()


def cmd_tap(args):
    """Watch the wire log."""
    from chatrelay.wiretap import live_tap
    live_tap(
        log_path=args.log,
        follow=not args.no_follow,
        last_n=args.last,
        role_filter=args.role,
        raw=args.raw,
    )


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name plus aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="chatrelay: streaming chat orchestrator.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatrelay {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"], "Start the API server", cmd_serve, setup_serve)

    def setup_index(p):
        p.add_argument("file", help="Product catalog JSON file")
        p.add_argument("--batch-size", type=int, default=32, help="Products per embedding call")

    _add_command(sub, ["index", "ingest"], "Index a product catalog", cmd_index, setup_index)

    def setup_search(p):
        p.add_argument("query", nargs="+", help="Search query")
        p.add_argument("--results", "-n", type=int, default=5, help="Number of results")

    _add_command(sub, ["search", "find"], "Semantic search over products", cmd_search, setup_search)

    def setup_tap(p):
        p.add_argument("--log", default=None, help="Path to wire.jsonl (default: from config)")
        p.add_argument("--last", "-n", type=int, default=20, help="Show last N entries before following")
        p.add_argument("--role", "-r", choices=["user", "assistant", "error"], default=None, help="Filter by role")
        p.add_argument("--no-follow", action="store_true", help="Don't follow, just show last entries")
        p.add_argument("--raw", action="store_true", help="Raw JSONL output, no formatting")

    _add_command(sub, ["tap", "log", "tail"], "Watch the wire log", cmd_tap, setup_tap)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
