"""Entry point for s3sync.

Usage:
    python -m s3sync --path ./outbox --bucket my-bucket --pattern '.*\\.csv'
    python -m s3sync --config sync.yaml

Flags override values read from the config file.  Without ``--config``,
``config.yaml`` / ``config.yml`` / ``config.json`` in the platform config
directory is used when present.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError

from s3sync import __app_name__, __version__
from s3sync.config import Config, ConfigError, find_default_config

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def _bool_flag(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="s3sync",
        description="Upload files from a local folder to S3 once they stop changing.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-p", "--path", dest="root_path", help="Local folder to sync (default: cwd)")
    parser.add_argument("-b", "--bucket", help="S3 bucket to upload into")
    parser.add_argument("--prefix", dest="key_prefix", help="Prefix prepended to every object key")
    parser.add_argument("--pattern", help="Regex a file name must match (default: all files)")
    parser.add_argument("--profile", help="AWS credential profile")
    parser.add_argument("--region", help="AWS region override")
    parser.add_argument("--endpoint-url", help="Custom S3 endpoint")
    parser.add_argument(
        "-d", "--delete", dest="delete_after_upload", nargs="?", const=True,
        type=_bool_flag, help="Delete local files after a successful upload",
    )
    parser.add_argument(
        "-r", "--recursive", nargs="?", const=True, type=_bool_flag,
        help="Watch sub-folders as well",
    )
    parser.add_argument(
        "-w", "--window", dest="window_seconds", type=float,
        help="Seconds a file must stay unchanged before upload (default: 5)",
    )
    parser.add_argument("--workers", dest="upload_workers", type=int, help="Concurrent uploads")
    parser.add_argument("--max-attempts", type=int, help="Upload attempts per file")
    parser.add_argument(
        "--no-initial-scan", dest="scan_on_start", action="store_const", const=False,
        help="Do not queue files already present at startup",
    )
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", help="Log file path")
    parser.add_argument("-c", "--config", type=Path, help="YAML or JSON config file")
    return parser


def load_config(argv: list[str] | None = None) -> Config:
    """Parse *argv* into a validated :class:`Config`."""
    args = build_parser().parse_args(argv)
    overrides: dict[str, Any] = {
        k: v for k, v in vars(args).items() if k != "config" and v is not None
    }
    config_path = args.config or find_default_config()
    cfg = Config(config_path, overrides)
    cfg.validate()
    return cfg


def main(argv: list[str] | None = None) -> int:
    """Validate configuration, then run the sync service until stopped."""
    try:
        cfg = load_config(argv)
    except ConfigError as exc:
        print(f"{__app_name__}: configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    from s3sync.service import SyncService, setup_logging

    setup_logging(cfg)
    try:
        service = SyncService(cfg)
    except BotoCoreError as exc:
        logger.error("Could not set up the S3 client: %s", exc)
        return EXIT_CONFIG_ERROR
    return service.run_forever()


if __name__ == "__main__":
    sys.exit(main())
