"""CLI entrypoints for sitepipe commands."""

from __future__ import annotations

import argparse
import time
from pathlib import Path

from .config import ConfigError, BuildConfig, load_config, resolve_works_dir
from .logging import configure_logging, get_logger
from .orchestrator import SERVE, BuildSession
from .scaffold import clone_site
from .service import DevServer, ReloadHub, create_app
from .watch import RebuildWorker, WatchLoop, build_watchers


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=argparse.SUPPRESS if suppress_default else False,
        help="Increase log verbosity for troubleshooting.",
    )


def _add_prod_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--prod",
        action="store_true",
        default=None,
        help="Production build: no source maps and no file watching.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sitepipe",
        description="Build static site assets incrementally and serve them with live reload.",
    )
    _add_verbose_option(parser)
    parser.add_argument(
        "--root",
        default=".",
        help="Project root containing config.yml and .target.yml (defaults to current directory).",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write detailed logs to this file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser(
        "start",
        help="Build the target site, start the dev server and watch for changes.",
    )
    _add_verbose_option(start_parser, suppress_default=True)
    _add_prod_option(start_parser)
    start_parser.add_argument("--port", type=int, default=None, help="Dev server port (default 9000).")
    start_parser.add_argument(
        "--no-watch",
        action="store_true",
        help="Serve the build without watching sources.",
    )

    build_parser = subparsers.add_parser("build", help="Build the target site once and exit.")
    _add_verbose_option(build_parser, suppress_default=True)
    _add_prod_option(build_parser)

    new_parser = subparsers.add_parser("new", help="Create a new site by copying an existing one.")
    _add_verbose_option(new_parser, suppress_default=True)
    new_parser.add_argument("origin", help="Name of the site to copy.")
    new_parser.add_argument("name", nargs="?", default=None, help="Name of the new site.")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for sitepipe commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose), log_file=args.log_file)
    root = Path(args.root).expanduser().resolve()

    if args.command == "new":
        try:
            works_dir = resolve_works_dir(root)
        except ConfigError as exc:
            parser.exit(1, f"sitepipe: {exc}\n")
        try:
            created = clone_site(root, args.origin, args.name, works_dir=works_dir)
        except (ValueError, FileNotFoundError, FileExistsError) as exc:
            parser.exit(1, f"{exc}\n")
        print(f"Site created at {_relativize(created, root)}")
        return

    overrides = {"production": args.prod, "port": getattr(args, "port", None)}
    try:
        config = load_config(root, overrides=overrides)
    except ConfigError as exc:
        parser.exit(1, f"sitepipe: {exc}\n")

    if args.command == "build":
        report = BuildSession(config).run_build(serve=False)
        if not report.ok:
            parser.exit(1, f"Build finished with {len(report.diagnostics)} problem(s)\n")
        print(f"Site built at {_relativize(config.output_root, root)}")
    elif args.command == "start":
        watch = not args.no_watch and not config.production
        try:
            _serve(config, watch=watch)
        except RuntimeError as exc:
            parser.exit(1, f"sitepipe start failed: {exc}\nRun with --verbose for more details.\n")
    else:  # pragma: no cover - argparse enforces choices
        parser.exit(1, "Unknown command\n")


def _serve(config: BuildConfig, *, watch: bool) -> None:
    """Build, serve and optionally watch until interrupted."""
    logger = get_logger("cli")
    hub = ReloadHub()
    session = BuildSession(config)
    app = create_app(config.output_root, hub=hub, status_provider=session.status)
    server = DevServer(app, port=config.port)
    session.server = server
    report = session.run_build(serve=True)
    if SERVE in report.failed:
        raise RuntimeError(str(report.graph.errors[SERVE]))

    loop: WatchLoop | None = None
    worker: RebuildWorker | None = None
    if watch:
        loop = WatchLoop(build_watchers(config, session.globs), interval=config.watch.interval)
        worker = RebuildWorker(session, loop.batches, hub=hub)
        worker.start()
        loop.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Stopping")
    finally:
        if loop is not None:
            loop.stop()
        if worker is not None:
            worker.stop()
        server.stop()


def _relativize(path: Path, root: Path) -> str:
    try:
        return str(path.resolve().relative_to(root))
    except ValueError:
        return str(path)


__all__ = ["main"]
