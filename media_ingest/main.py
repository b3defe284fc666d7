import argparse
import logging
import sys
from dataclasses import fields
from pathlib import Path
from typing import List, Optional

from . import config
from .core import IngestionOrchestrator
from .database.db import DBManager
from .exceptions import MediaIngestError
from .imaging.faces import FaceDetector, NullBackend
from .metadata.extract import MetadataExtractor
from .models import CaptureMetadata
from .reporting import BatchSummary, write_csv


def setup_logging(log_dir: Optional[Path], verbose: bool):
    """Sets up logging to the console and, when given a directory, a log file in it."""
    log_level = logging.DEBUG if verbose else logging.INFO

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        # Create dest root if it doesn't exist so we can log there
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_dir / config.LOG_FILE_NAME, encoding='utf-8'))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Media Ingest: import photos and videos into a catalog")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Ingest files or directory trees into the library")
    imp.add_argument("src", type=Path, nargs="+", help="Source files or directories")
    imp.add_argument("--dest", type=Path, required=True, help="Library root for originals and renditions")
    imp.add_argument("--db", type=Path, default=None,
                     help=f"Custom path for SQLite DB (default: dest/{config.DB_FILE_NAME})")
    imp.add_argument("--workers", type=int, default=config.DEFAULT_MAX_WORKERS,
                     help="Files processed concurrently")
    imp.add_argument("--timeout", type=float, default=config.FILE_TIMEOUT_SEC,
                     help="Per-file time budget in seconds (0 disables)")
    imp.add_argument("--skip-dirs-file", type=Path, default=None, help="File containing paths to ignore")
    imp.add_argument("--no-face-detection", action="store_true",
                     help="Skip face detection; thumbnails use a centred crop")
    imp.add_argument("--report-csv", type=Path, default=None, help="Write a per-file status report CSV")

    meta = sub.add_parser("metadata", help="Print the capture metadata of a single file")
    meta.add_argument("path", type=Path, help="Media file to inspect")

    return p.parse_args(argv)


def load_skip_dirs(skip_file: Optional[Path]) -> set[Path]:
    if not skip_file or not skip_file.exists():
        return set()

    skips = set()
    with skip_file.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                skips.add(Path(line).expanduser().resolve())
    return skips


def format_metadata(metadata: CaptureMetadata) -> str:
    lines = [f"Dimensions: {metadata.width}x{metadata.height}"]
    if metadata.captured_at:
        lines.append(f"Captured:   {metadata.captured_at.isoformat()}")
    if metadata.rotation is not None:
        lines.append(f"Rotation:   {metadata.rotation.value}")
    if metadata.gps:
        gps = metadata.gps
        place = f" ({gps.place})" if gps.place else ""
        lines.append(f"Location:   {gps.latitude:.6f}, {gps.longitude:.6f}{place}")
    for f in fields(metadata.type_specific):
        value = getattr(metadata.type_specific, f.name)
        if value is not None:
            lines.append(f"{f.name.replace('_', ' ').capitalize() + ':':<12}{value}")
    return "\n".join(lines)


def run_metadata(path: Path) -> int:
    try:
        metadata = MetadataExtractor().extract(path)
    except MediaIngestError as e:
        logging.error(f"Could not read metadata from {path}: {e}")
        return 1
    print(format_metadata(metadata))
    return 0


def run_import(args) -> int:
    dest_root = args.dest.resolve()
    src_roots = [s.resolve() for s in args.src]

    logging.info("=== Media Ingest Started ===")
    logging.info(f"Sources: {', '.join(str(s) for s in src_roots)}")
    logging.info(f"Dest:    {dest_root}")

    db_path = args.db if args.db else dest_root / config.DB_FILE_NAME
    skip_dirs = load_skip_dirs(args.skip_dirs_file)
    detector = FaceDetector(NullBackend()) if args.no_face_detection else FaceDetector()

    with DBManager(db_path) as db:
        store = db.store()
        orchestrator = IngestionOrchestrator(
            store=store,
            dest_root=dest_root,
            detector=detector,
            max_workers=args.workers,
            timeout=args.timeout or None,
            show_progress=True,
        )
        results = orchestrator.ingest_tree(src_roots, skip_dirs)
        catalog_size = store.count()

    summary = BatchSummary.from_results(results)
    logging.info("=== Ingest Complete ===\n" + summary.summary())
    logging.info(f"Catalog now holds {catalog_size} entries")

    if args.report_csv:
        write_csv(results, args.report_csv)
    return 0


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)

    if args.command == "metadata":
        setup_logging(None, args.verbose)
        sys.exit(run_metadata(args.path))

    setup_logging(args.dest.resolve(), args.verbose)
    try:
        sys.exit(run_import(args))
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        sys.exit(1)
    except Exception:
        logging.exception("Fatal error during ingest.")
        sys.exit(1)


if __name__ == "__main__":
    main()
