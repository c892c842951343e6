import argparse
import json
import os
import sys
import time
from typing import List, Optional

from .errors import ChunkNotFound, CodeIndexError
from .tools import (
    CodeIndexService,
    format_health,
    format_index_stats,
    format_logs,
    format_metrics,
    format_peek,
    format_results,
    format_status,
)


def _service(args: argparse.Namespace) -> CodeIndexService:
    return CodeIndexService(root=args.repo, config_path=args.config)


def _emit(args: argparse.Namespace, data, text: str):
    if args.json:
        print(json.dumps(data, indent=2, default=str))
    else:
        print(text)


def cmd_index(args: argparse.Namespace) -> int:
    """Build or refresh the index for a repository."""
    with _service(args) as service:
        stats = service.index(force=args.force, estimate_only=args.estimate, incremental=not args.full)
    _emit(args, stats, format_index_stats(stats, verbose=args.verbose))
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    kinds = args.kind or None
    with _service(args) as service:
        results = service.search(
            args.query,
            k=args.top_k,
            path_prefix=args.path,
            file_type=args.type,
            kinds=kinds,
            min_score=args.min_score,
        )
    _emit(args, results, format_results(results, query=args.query, show_text=not args.brief))
    return 0


def cmd_peek(args: argparse.Namespace) -> int:
    with _service(args) as service:
        peek = service.peek(args.chunk_id)
    _emit(args, peek, format_peek(peek))
    return 0


def cmd_similar(args: argparse.Namespace) -> int:
    with _service(args) as service:
        results = service.find_similar(
            chunk_id=args.chunk,
            snippet=args.snippet,
            k=args.top_k,
            path_prefix=args.path,
            exclude_file=args.exclude_file,
        )
    _emit(args, results, format_results(results, show_text=not args.brief))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    with _service(args) as service:
        status = service.status()
    _emit(args, status, format_status(status))
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    with _service(args) as service:
        health = service.health_check(repair=args.repair)
    _emit(args, health, format_health(health))
    return 0 if health["healthy"] else 1


def cmd_metrics(args: argparse.Namespace) -> int:
    with _service(args) as service:
        metrics = service.metrics()
    _emit(args, metrics, format_metrics(metrics))
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    with _service(args) as service:
        events = service.logs(limit=args.limit, level=args.level, category=args.category)
    _emit(args, events, format_logs(events))
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    """Index once, then keep the index current until interrupted."""
    with _service(args) as service:
        stats = service.index()
        print(format_index_stats(stats))
        service.watch()
        print(f"Watching {service.root} for changes (Ctrl+C to stop)")
        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            print("Stopping watcher...")
    return 0


def _common(p: argparse.ArgumentParser, repo_positional: bool = False):
    if repo_positional:
        p.add_argument("repo", nargs="?", default=os.getcwd(), help="Repository root (default: cwd)")
    else:
        p.add_argument("--repo", default=os.getcwd(), help="Repository root (default: cwd)")
    p.add_argument("--config", default=None, help="Path to config.toml")
    p.add_argument("--json", action="store_true", help="Print raw JSON instead of text")


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="codeindex", description="Semantic code index with a resolved call graph")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_idx = sub.add_parser("index", help="Index a repository")
    _common(p_idx, repo_positional=True)
    p_idx.add_argument("--force", action="store_true", help="Clear the index and rebuild (cached embeddings are reused)")
    p_idx.add_argument("--estimate", action="store_true", help="Only estimate the embedding cost")
    p_idx.add_argument("--full", action="store_true", help="Re-chunk every file, not only changed ones")
    p_idx.add_argument("--verbose", action="store_true", help="List per-file and per-chunk failures")
    p_idx.set_defaults(func=cmd_index)

    p_q = sub.add_parser("search", help="Search the index with a natural language or code query")
    _common(p_q)
    p_q.add_argument("query", help="Natural language or code query")
    p_q.add_argument("--top-k", type=int, default=None)
    p_q.add_argument("--path", default=None, help="Only results under this path prefix")
    p_q.add_argument("--type", default=None, help="Only results with this file extension")
    p_q.add_argument("--kind", action="append", help="Only chunks of this kind (repeatable)")
    p_q.add_argument("--min-score", type=float, default=None)
    p_q.add_argument("--brief", action="store_true", help="Locations only, no code")
    p_q.set_defaults(func=cmd_search)

    p_peek = sub.add_parser("peek", help="Show a chunk with its incoming and outgoing calls")
    _common(p_peek)
    p_peek.add_argument("chunk_id", help="Chunk id as printed by search")
    p_peek.set_defaults(func=cmd_peek)

    p_sim = sub.add_parser("similar", help="Find chunks similar to an indexed chunk or a snippet")
    _common(p_sim)
    target = p_sim.add_mutually_exclusive_group(required=True)
    target.add_argument("--chunk", help="Chunk id")
    target.add_argument("--snippet", help="Code snippet")
    p_sim.add_argument("--top-k", type=int, default=None)
    p_sim.add_argument("--path", default=None, help="Only results under this path prefix")
    p_sim.add_argument("--exclude-file", default=None, help="Skip results from this file")
    p_sim.add_argument("--brief", action="store_true", help="Locations only, no code")
    p_sim.set_defaults(func=cmd_similar)

    p_status = sub.add_parser("status", help="Show index status")
    _common(p_status)
    p_status.set_defaults(func=cmd_status)

    p_health = sub.add_parser("health", help="Check provider reachability and index integrity")
    _common(p_health)
    p_health.add_argument("--repair", action="store_true", help="Rebuild the vector index from stored rows if out of sync")
    p_health.set_defaults(func=cmd_health)

    p_metrics = sub.add_parser("metrics", help="Show cost, cache hit rate and resolution rate")
    _common(p_metrics)
    p_metrics.set_defaults(func=cmd_metrics)

    p_logs = sub.add_parser("logs", help="Show recent log events")
    _common(p_logs)
    p_logs.add_argument("--limit", type=int, default=50)
    p_logs.add_argument("--level", default=None, help="Minimum level (debug|info|warning|error)")
    p_logs.add_argument("--category", default=None, help="Logger category, e.g. indexer")
    p_logs.set_defaults(func=cmd_logs)

    p_watch = sub.add_parser("watch", help="Index and keep the index current as files change")
    _common(p_watch, repo_positional=True)
    p_watch.set_defaults(func=cmd_watch)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ChunkNotFound as exc:
        print(f"Chunk not found: {exc.chunk_id}", file=sys.stderr)
        return 2
    except (CodeIndexError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
