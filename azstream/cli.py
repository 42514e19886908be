"""
azstream — stream a file or stdin into Azure Blob Storage.

Usage:
    azstream [options] <input> <destinationPath>

    <input> is a local file path, or - to read from stdin.
    <destinationPath> is /container/path/to/blob inside the storage account.

Exit codes:
    0 success, 1 invalid arguments, 2 input file not found,
    3 missing or invalid credentials, 4 upload failed.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from . import __version__
from .config import (
    MAX_BLOCKS_PER_BLOB,
    MB,
    DestinationPath,
    UploadConfiguration,
    resolve_credentials,
)
from .errors import InvalidArgument, UploadError
from .uploader import StreamUploader

EXIT_OK = 0
EXIT_INVALID_ARGS = 1
EXIT_INPUT_NOT_FOUND = 2
EXIT_CREDENTIALS = 3
EXIT_UPLOAD_FAILED = 4

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def build_logger(debug: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger("azstream")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # stdout carries the resulting URLs only
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if debug else logging.INFO)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(fh)

    return logger


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------

def _positive_int(value: str) -> int:
    try:
        num = int(value, 10)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value}")
    if num < 1:
        raise argparse.ArgumentTypeError(f"invalid number: {value}")
    return num


def _build_parser(defaults: UploadConfiguration) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="azstream",
        description="Stream a file or stdin into Azure Blob Storage as block blobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Authentication:\n"
            "  Set AZURE_STORAGE_ACCOUNT and either AZURE_STORAGE_ACCESS_KEY or\n"
            "  AZURE_STORAGE_SAS_TOKEN (a .env file is read too), or pass\n"
            "  --storage-account with --access-key or --sas-token.\n\n"
            "Examples:\n"
            "  azstream archive.tar /bak/data01.tar\n"
            "  tar c /data | azstream - /container/file-from-stdin.tar\n"
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("input", help="Local file to upload; use - for stdin.")
    parser.add_argument(
        "destination",
        metavar="destinationPath",
        help="Destination inside the storage account, e.g. /container/path/to/file.",
    )
    parser.add_argument(
        "-b", "--blocks",
        type=_positive_int,
        default=defaults.blocks_per_blob,
        help=f"Number of blocks per blob [{defaults.blocks_per_blob}], max {MAX_BLOCKS_PER_BLOB}.",
    )
    parser.add_argument(
        "-s", "--block-size",
        type=_positive_int,
        default=max(defaults.block_size // MB, 1),
        metavar="MB",
        help=f"Size of each block in MB, max 100 [{defaults.block_size // MB}].",
    )
    parser.add_argument(
        "-c", "--concurrency",
        type=_positive_int,
        default=defaults.concurrency,
        help=f"Number of concurrent block uploads [{defaults.concurrency}].",
    )
    parser.add_argument(
        "--no-suffix",
        action="store_true",
        help="Upload a single blob only and do not append a numeric suffix.",
    )
    parser.add_argument(
        "--endpoint",
        default=None,
        metavar="HOST",
        help=f"Blob service endpoint suffix [{defaults.endpoint}].",
    )
    parser.add_argument("--no-md5", action="store_true", help="Skip MD5 check when uploading blocks.")
    parser.add_argument("--storage-account", metavar="NAME", help="Name of the storage account.")
    parser.add_argument("--access-key", metavar="KEY", help="Access key of the storage account.")
    parser.add_argument("--sas-token", metavar="TOKEN", help="SAS token for authentication.")
    parser.add_argument("--debug", action="store_true", help="Log request details.")
    parser.add_argument("--log-file", metavar="PATH", help="Also write a debug log to PATH.")
    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(find_dotenv(usecwd=True))

    try:
        defaults = UploadConfiguration.from_env()
    except InvalidArgument as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_INVALID_ARGS

    try:
        args = _build_parser(defaults).parse_args(argv)
    except SystemExit as exc:
        # --help and --version exit with 0, usage errors with 2
        return EXIT_OK if exc.code == 0 else EXIT_INVALID_ARGS

    logger = build_logger(
        debug=args.debug or os.environ.get("DEBUG", "").lower() in ("1", "true", "yes"),
        log_file=args.log_file or os.environ.get("LOG_PATH"),
    )

    input_path = None
    if args.input != "-":
        input_path = Path(args.input).expanduser()
        if not input_path.is_file():
            logger.error(f"File does not exist: {input_path}")
            return EXIT_INPUT_NOT_FOUND

    try:
        destination = DestinationPath.parse(args.destination)
        config = defaults.with_overrides(
            block_size=args.block_size * MB,
            blocks_per_blob=args.blocks,
            concurrency=args.concurrency,
            single_blob=args.no_suffix,
            verify_checksum=not args.no_md5,
            endpoint=args.endpoint or defaults.endpoint,
        )
    except InvalidArgument as exc:
        logger.error(str(exc))
        return EXIT_INVALID_ARGS

    try:
        credentials = resolve_credentials(
            account_name=args.storage_account,
            access_key=args.access_key,
            sas_token=args.sas_token,
        )
    except InvalidArgument as exc:
        logger.error(str(exc))
        return EXIT_CREDENTIALS

    source = sys.stdin.buffer if input_path is None else input_path.open("rb")

    try:
        urls = StreamUploader(source, destination, credentials, config, logger=logger).run()
    except UploadError as exc:
        logger.error(f"Upload failed: {exc}")
        return EXIT_UPLOAD_FAILED
    finally:
        if source is not sys.stdin.buffer:
            source.close()

    print("\n".join(urls))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
