#!/usr/bin/env python3
"""
find_dupes.py — 在指定的圖片清單中找出重複 / 近似重複的圖片

Usage:
    python find_dupes.py a.jpg b.jpg c.png
    python find_dupes.py --from-file paths.txt
    python find_dupes.py --from-file paths.txt --threshold 8 --json report.json
    python find_dupes.py --from-file paths.txt --no-cache
"""

import argparse
import logging
import sys

from dupfinder.engine import (
    DEFAULT_THRESHOLD,
    FINGERPRINT_WORKERS,
    MAX_THRESHOLD,
    PARTIAL_HASH_WORKERS,
    detect_duplicates,
)
from dupfinder.exceptions import DupFinderError
from dupfinder.hasher import HashAlgorithm
from dupfinder.report import format_text_report, write_json_report

logger = logging.getLogger("find_dupes")


def _configure_logging(verbose: bool = False):
    """Set up root logging: INFO (or DEBUG) to stdout."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        stream=sys.stdout,
    )


def _configure_stdout():
    """Enable line buffering when stdout supports it."""
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(line_buffering=True)


def _read_path_list(list_path: str) -> list[str]:
    """每行一個路徑；空行與 # 開頭的行略過"""
    with open(list_path, 'r', encoding='utf-8') as f:
        return [
            line.strip() for line in f
            if line.strip() and not line.lstrip().startswith('#')
        ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Find duplicate and near-duplicate images / 找出重複圖片",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python find_dupes.py a.jpg b.jpg c.png
  python find_dupes.py --from-file paths.txt
  python find_dupes.py --from-file paths.txt --threshold 8 --json report.json
  python find_dupes.py --from-file paths.txt --algorithm mean --no-cache
        """,
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Image files to compare / 要比對的圖片",
    )
    parser.add_argument(
        "--from-file", "-f",
        default=None,
        help="Read image paths from a text file, one per line / 從檔案讀取路徑清單",
    )
    parser.add_argument(
        "--threshold", "-t",
        type=int,
        default=DEFAULT_THRESHOLD,
        help=(
            f"Max Hamming distance (0-{MAX_THRESHOLD}) between fingerprints "
            f"(default: {DEFAULT_THRESHOLD}) / 感知指紋距離門檻"
        ),
    )
    parser.add_argument(
        "--algorithm",
        choices=[
            a.value for a in HashAlgorithm if a is not HashAlgorithm.EXACT
        ],
        default=HashAlgorithm.GRADIENT.value,
        help="Perceptual fingerprint algorithm (default: gradient)",
    )
    parser.add_argument(
        "--cache-dir",
        default=None,
        help="Fingerprint cache directory (default: system temp dir) / 快取資料夾",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Don't read or write the fingerprint cache / 停用指紋快取",
    )
    parser.add_argument(
        "--json", "-j",
        dest="json_path",
        default=None,
        help="Write a JSON report to this path / 輸出 JSON 報告",
    )
    parser.add_argument(
        "--hash-workers",
        type=int,
        default=PARTIAL_HASH_WORKERS,
        help=f"Threads for partial hashing (default: {PARTIAL_HASH_WORKERS})",
    )
    parser.add_argument(
        "--fingerprint-workers",
        type=int,
        default=FINGERPRINT_WORKERS,
        help=f"Threads for image decoding (default: {FINGERPRINT_WORKERS})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging / 顯示除錯訊息",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    _configure_stdout()
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    paths = list(args.paths)
    if args.from_file:
        try:
            paths.extend(_read_path_list(args.from_file))
        except OSError as e:
            print(f"\nERROR: Cannot read path list: {e}", file=sys.stderr)
            return 1

    if not paths:
        parser.error("no image paths given")

    settings = {
        "threshold": args.threshold,
        "algorithm": args.algorithm,
        "use_cache": not args.no_cache,
    }

    try:
        result = detect_duplicates(
            paths,
            args.threshold,
            cache_dir=args.cache_dir,
            use_cache=not args.no_cache,
            algorithm=args.algorithm,
            hash_workers=args.hash_workers,
            fingerprint_workers=args.fingerprint_workers,
        )
    except DupFinderError as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1

    sys.stdout.write(format_text_report(result))

    if args.json_path:
        write_json_report(result, args.json_path, settings)
        logger.info("  JSON: %s", args.json_path)

    return 0


if __name__ == "__main__":
    sys.exit(main())
