"""Outpost CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from outpost.codec import generate_key


def _init_project(config_dir: Path) -> None:
    """Scaffold a .outpost/ directory with default configuration."""
    from outpost.config import DEFAULT_CONFIG_YAML

    if config_dir.exists():
        print(f"Error: {config_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    config_dir.mkdir(parents=True)
    (config_dir / "config.yaml").write_text(DEFAULT_CONFIG_YAML)

    print(f"Initialized Outpost config at {config_dir}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_dir / 'config.yaml'}")
    print("  2. Generate keys: outpost generate-key (once each for")
    print("     ENCRYPTION_KEY and USER_DATA_ENCRYPTION_KEY)")
    print("  3. Set OUTPOST_API_KEY and, optionally, ORGO_API_KEY")
    print(f"  4. Run: outpost serve --config-dir {config_dir}")


async def _encrypt_existing(config_dir: Path) -> int:
    from outpost.codec import load_codecs
    from outpost.config import load_config
    from outpost.store import SetupStore

    config = load_config(config_dir)
    codecs = load_codecs(config)
    store = SetupStore(config.db_path)
    await store.initialize()
    try:
        report = await store.encrypt_existing(codecs)
    finally:
        await store.close()
    print(f"Encrypted {report.updated} record(s), {report.skipped} already encrypted or empty")
    return report.updated


def _config_dir_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path.cwd() / ".outpost",
        help="Path to the .outpost/ config directory (default: ./.outpost)",
    )


def main():
    parser = argparse.ArgumentParser(
        prog="outpost",
        description="Outpost: per-user agent sandbox provisioning service",
    )

    subparsers = parser.add_subparsers(dest="command")

    # outpost init
    init_parser = subparsers.add_parser("init", help="Create a default .outpost/ config")
    _config_dir_arg(init_parser)

    # outpost serve
    serve_parser = subparsers.add_parser("serve", help="Start the Outpost API server")
    _config_dir_arg(serve_parser)
    serve_parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: server.host from config)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: server.port from config)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # outpost generate-key
    subparsers.add_parser("generate-key", help="Print a fresh base64 encryption key")

    # outpost encrypt-existing
    migrate_parser = subparsers.add_parser(
        "encrypt-existing", help="Encrypt plaintext credentials already in the database"
    )
    _config_dir_arg(migrate_parser)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.config_dir)
        return

    if args.command == "generate-key":
        print(generate_key())
        return

    logging.basicConfig(
        level=getattr(logging, getattr(args, "log_level", "INFO")),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not (args.config_dir / "config.yaml").exists():
        print(f"Error: config not found at {args.config_dir}", file=sys.stderr)
        print("Run 'outpost init' to create one, or pass --config-dir", file=sys.stderr)
        sys.exit(1)

    if args.command == "encrypt-existing":
        asyncio.run(_encrypt_existing(args.config_dir))
        return

    # serve
    import uvicorn

    from outpost.config import load_config
    from outpost.server import create_app

    config = load_config(args.config_dir)
    app = create_app(config_dir=args.config_dir, config=config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
