"""Entry point: mnemo [-v] <command>

- No args / "chat":         Interactive CLI REPL
- "ask <text>":             One question, one answer
- "serve":                  Daemon mode (watcher + heartbeat + connectors)
- "memory search|stats|reindex"
- "config show|get|set|path|init"
- "heartbeat run [--force]"
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

from mnemo.config import (
    MnemoConfig,
    config_value,
    default_config_path,
    find_config_file,
    init_config,
    load_config,
    set_config_value,
    to_toml,
)
from mnemo.errors import MnemoError

USAGE = """\
Usage: mnemo [-v] <command>

  chat                      Interactive CLI REPL (default)
  ask <question>            Ask one question and print the answer
  serve                     Daemon mode: watcher, heartbeat, connectors
  memory search <query> [--top-k N]
                            Search the knowledge index
  memory stats              Index statistics
  memory reindex [--full]   Reconcile the index with the workspace
  config show [--format toml|json]
                            Print the effective configuration
  config get <key>          Print one value, e.g. agent.context_window
  config set <key> <value>  Write one value to mnemo.toml
  config path               Print the config file in use
  config init [--force]     Write a mnemo.toml with every default
  heartbeat run [--force]   Run one heartbeat tick now
"""


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _option(args: list[str], name: str, default: str | None = None) -> str | None:
    """Pop ``--name value`` from args."""
    if name in args:
        i = args.index(name)
        if i + 1 >= len(args):
            raise MnemoError(f"{name} requires a value")
        value = args[i + 1]
        del args[i : i + 2]
        return value
    return default


def _flag(args: list[str], name: str) -> bool:
    if name in args:
        args.remove(name)
        return True
    return False


# ── Conversation ──────────────────────────────────────────────


def _run_cli(config: MnemoConfig) -> None:
    """Interactive CLI REPL mode, with the workspace watched while it runs."""
    from mnemo.connectors.cli import CLIConnector
    from mnemo.core import Mnemo
    from mnemo.daemon import MnemoDaemon

    mnemo = Mnemo(config)
    mnemo.add_connector(CLIConnector())
    watcher = MnemoDaemon(config).build_watcher(mnemo)

    async def run() -> None:
        await asyncio.to_thread(watcher.start)
        try:
            await mnemo.start()
        finally:
            await asyncio.to_thread(watcher.stop)
            await mnemo.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


def _run_ask(config: MnemoConfig, args: list[str]) -> None:
    from mnemo.connectors.base import IncomingMessage
    from mnemo.core import Mnemo

    question = " ".join(args).strip()
    if not question:
        raise MnemoError("ask requires a question")

    async def run() -> None:
        mnemo = Mnemo(config)
        try:
            await asyncio.to_thread(mnemo.indexer.reconcile)
            result = await mnemo.handle_message(
                IncomingMessage(text=question, chat_id="ask", sender="user", connector_name="ask")
            )
        finally:
            await mnemo.stop()
        print(result.content)
        for warning in result.warnings:
            print(f"[warning] {warning}", file=sys.stderr)

    asyncio.run(run())


def _run_serve(config: MnemoConfig) -> None:
    """Daemon mode: watcher, heartbeat and connectors."""
    from mnemo.daemon import MnemoDaemon

    daemon = MnemoDaemon(config)
    asyncio.run(daemon.run())


# ── memory ────────────────────────────────────────────────────


def _run_memory(config: MnemoConfig, args: list[str]) -> None:
    from mnemo.memory.index import IndexStore
    from mnemo.memory.watcher import CorpusIndexer

    sub = args.pop(0) if args else ""
    index = IndexStore(config.memory.db_path)
    try:
        if sub == "search":
            top_k = int(_option(args, "--top-k", str(config.agent.top_k)))
            query = " ".join(args).strip()
            if not query:
                raise MnemoError("memory search requires a query")
            results = index.search(query, top_k=top_k)
            if not results:
                print("No results.")
            for r in results:
                print(f"{r.source_path}:{r.line_start}-{r.line_end}  (score {r.score:.3f})")
                snippet = " ".join(r.text.split())
                print(f"    {snippet[:200]}")
        elif sub == "stats":
            stats = index.stats()
            print(f"Files:  {stats.total_files}")
            print(f"Chunks: {stats.total_chunks}")
            print(f"Size:   {stats.index_size_kb} KB ({config.memory.db_path})")
        elif sub == "reindex":
            full = _flag(args, "--full")
            indexer = CorpusIndexer(
                config.memory.workspace,
                index,
                chunk_size=config.memory.chunk_size,
                chunk_overlap=config.memory.chunk_overlap,
            )
            if full:
                for source in index.indexed_paths():
                    index.delete_file(source)
            report = indexer.reconcile()
            print(
                f"Reindexed: {len(report.upserted)} updated, {len(report.deleted)} removed, "
                f"{report.unchanged} unchanged, {len(report.failed)} failed"
            )
            for source, error in report.failed.items():
                print(f"  failed: {source}: {error}", file=sys.stderr)
        else:
            raise MnemoError(f"Unknown memory command: {sub or '(none)'}")
    finally:
        index.close()


# ── config ────────────────────────────────────────────────────


def _run_config(config: MnemoConfig, args: list[str]) -> None:
    sub = args.pop(0) if args else "show"
    if sub == "show":
        fmt = _option(args, "--format", "toml")
        if fmt == "json":
            print(json.dumps(config.to_dict(), indent=2, ensure_ascii=False))
        elif fmt == "toml":
            print(to_toml(config.to_dict()), end="")
        else:
            raise MnemoError(f"Unknown format: {fmt} (expected toml or json)")
    elif sub == "get":
        if not args:
            raise MnemoError("config get requires a key")
        value = config_value(config, args[0])
        print(json.dumps(value, ensure_ascii=False) if isinstance(value, (dict, list)) else value)
    elif sub == "set":
        if len(args) < 2:
            raise MnemoError("config set requires a key and a value")
        path = config.source or default_config_path()
        value = set_config_value(path, args[0], " ".join(args[1:]))
        print(f"Set {args[0]} = {value} in {path}")
    elif sub == "path":
        source = config.source or find_config_file()
        print(source if source else f"{default_config_path()} (not created; run 'mnemo config init')")
    elif sub == "init":
        path = default_config_path()
        init_config(path, force=_flag(args, "--force"))
        print(f"Created config file at {path}")
    else:
        raise MnemoError(f"Unknown config command: {sub}")


# ── heartbeat ─────────────────────────────────────────────────


def _run_heartbeat(config: MnemoConfig, args: list[str]) -> None:
    from mnemo.core import Mnemo
    from mnemo.daemon import MnemoDaemon

    sub = args.pop(0) if args else ""
    if sub != "run":
        raise MnemoError(f"Unknown heartbeat command: {sub or '(none)'}")
    force = _flag(args, "--force")

    async def run() -> None:
        mnemo = Mnemo(config)
        try:
            report = await MnemoDaemon(config).build_heartbeat(mnemo).tick(force=force)
        finally:
            await mnemo.stop()
        if report.skipped_reason:
            print(f"Skipped: {report.skipped_reason}")
            return
        if not report.done and not report.failed:
            print("No pending tasks.")
        for task in report.done:
            print(f"[x] {task}")
        for task, reason in report.failed.items():
            print(f"[!] {task}: {reason}")
        for warning in report.warnings:
            print(f"[warning] {warning}", file=sys.stderr)

    asyncio.run(run())


def main() -> None:
    args = sys.argv[1:]
    verbose = _flag(args, "-v") or _flag(args, "--verbose")
    cmd = args.pop(0) if args else "chat"

    if cmd in ("-h", "--help", "help"):
        print(USAGE)
        return

    try:
        # config show/get must still work when the file holds invalid values
        config = load_config(validate=cmd != "config")
        _setup_logging("DEBUG" if verbose else config.log_level)

        if cmd in ("chat", "repl"):
            _run_cli(config)
        elif cmd == "ask":
            _run_ask(config, args)
        elif cmd == "serve":
            _run_serve(config)
        elif cmd == "memory":
            _run_memory(config, args)
        elif cmd == "config":
            _run_config(config, args)
        elif cmd == "heartbeat":
            _run_heartbeat(config, args)
        else:
            print(USAGE)
            sys.exit(1)
    except MnemoError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
