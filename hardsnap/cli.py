import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import NoReturn

from .config import find_config
from .errors import (BackupCancelled, CorruptManifestError, DestinationLockedError, DiskFullError,
                     HardsnapError)
from .operations import EXIT_ABORTED, BackupOperations

logger = logging.getLogger('hardsnap')


def configure_logging(log_file: str, verbose: bool = False) -> None:
    """Send log records to a file only, keeping stdout for user-facing output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        filename=log_file,
        filemode='a'
    )


def format_timestamp(timestamp: str) -> str:
    """Render a manifest creation time as YYYY-MM-DD HH:MM:SS."""
    dt = datetime.fromisoformat(timestamp)
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def format_size(size: int) -> str:
    """Human readable byte count, e.g. 1.5 MB."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            break
        value /= 1024
    return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"


def format_elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{seconds:.1f}s"


def print_error_and_exit(error_message: str, exit_code: int = EXIT_ABORTED) -> NoReturn:
    """Log the message, print it to stderr and exit (1 unless told otherwise)."""
    logger.error(error_message)
    print(f"Error: {error_message}", file=sys.stderr)
    sys.exit(exit_code)


def _operations(args: argparse.Namespace, **overrides) -> BackupOperations:
    config = find_config(args.destination, args.config).with_overrides(**overrides)
    return BackupOperations(args.destination, config=config)


def snapshot_command(args: argparse.Namespace) -> None:
    """
    Execute the snapshot command to create a backup snapshot of a directory.

    Exits with status 2 when the snapshot was committed but some files
    could not be backed up, and 1 when no snapshot was committed.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - destination: Directory holding the snapshots
            - target_directory: Directory to snapshot
            - force_rehash: Hash every file regardless of size and mtime
            - workers: Number of hashing/copying threads
    """
    try:
        logger.info("Starting snapshot creation")
        target_dir = Path(args.target_directory)
        if not target_dir.exists():
            print_error_and_exit(f"Target directory '{target_dir}' does not exist")
        if not target_dir.is_dir():
            print_error_and_exit(f"'{target_dir}' is not a directory")

        with _operations(args, workers=args.workers) as ops:
            result = ops.snapshot(str(target_dir), force_rehash=args.force_rehash or None)
    except DestinationLockedError as e:
        print_error_and_exit(str(e))
    except CorruptManifestError as e:
        print_error_and_exit(f"{e}. Repair or prune the snapshot before taking a new one.")
    except DiskFullError as e:
        print_error_and_exit(f"Destination is full, snapshot aborted: {e}")
    except BackupCancelled:
        print_error_and_exit("Snapshot cancelled")
    except PermissionError as e:
        print_error_and_exit(f"Permission denied: {str(e)}")
    except HardsnapError as e:
        print_error_and_exit(f"Snapshot aborted: {str(e)}")
    except (ValueError, OSError) as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except Exception as e:
        print_error_and_exit(f"Error creating snapshot: {str(e)}")

    print(f"Snapshot {result.snapshot_id} created successfully.")
    print(f"Linked: {result.linked}  Copied: {result.copied}  Errors: {len(result.errors)}")
    print(f"Backed up {result.files} files ({format_size(result.size)}) in {format_elapsed(result.elapsed)} "
          f"({len(result.errors)} errors)")
    if result.errors:
        print(f"\n{len(result.errors)} files could not be backed up:", file=sys.stderr)
        for relative_path, cause in sorted(result.errors.items()):
            print(f"  - {relative_path}: {cause}", file=sys.stderr)
    sys.exit(result.exit_code)


def list_command(args: argparse.Namespace) -> None:
    """Print one row per snapshot with its apparent and distinct size in KB."""
    try:
        logger.info("Listing snapshots")
        with _operations(args) as ops:
            snapshots = ops.list_snapshots()

        if not snapshots:
            logger.info("No snapshots found")
            print("No snapshots found.")
            return

        # Print the header
        print(f"{'SNAPSHOT':<10}{'TIMESTAMP':<22}{'FILES':<8}{'ERRORS':<8}{'SIZE':<10}{'DISTINCT_SIZE':<14}")

        # Print each snapshot
        for snapshot in snapshots:
            print(f"{snapshot['id']:<10}{format_timestamp(snapshot['timestamp']):<22}"
                  f"{snapshot['files']:<8}{snapshot['errors']:<8}{snapshot['size']:<10}"
                  f"{snapshot['distinct_size']:<14}")

        # Print total size summary
        total = sum(snapshot['distinct_size'] for snapshot in snapshots)
        print(f"{'total distinct':<48}{total:<10}")
    except CorruptManifestError as e:
        print_error_and_exit(str(e))
    except PermissionError:
        print_error_and_exit(f"Permission denied when accessing '{args.destination}'")
    except Exception as e:
        print_error_and_exit(f"Error listing snapshots: {str(e)}")


def restore_command(args: argparse.Namespace) -> None:
    """
    Execute the restore command to recover files from a snapshot.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - destination: Directory holding the snapshots
            - snapshot_number: ID of the snapshot to restore
            - output_directory: Directory to restore files to
    """
    try:
        logger.info("Starting restore operation")
        output_dir = Path(args.output_directory)

        if output_dir.exists() and not output_dir.is_dir():
            print_error_and_exit(f"'{output_dir}' exists but is not a directory")

        with _operations(args) as ops:
            success = ops.restore(args.snapshot_number, str(output_dir))
        if success:
            logger.info(f"Snapshot {args.snapshot_number} restored to {output_dir}")
            print(f"Snapshot {args.snapshot_number} restored to {output_dir}")
        else:
            print_error_and_exit(f"Snapshot {args.snapshot_number} was only partially restored to {output_dir}")
    except PermissionError as e:
        print_error_and_exit(f"Permission denied: {str(e)}")
    except ValueError as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except Exception as e:
        print_error_and_exit(f"Error restoring snapshot: {str(e)}")


def prune_command(args: argparse.Namespace) -> None:
    try:
        logger.info("Pruning snapshot")
        with _operations(args) as ops:
            ops.prune(args.snapshot)
        logger.info(f"Snapshot {args.snapshot} pruned successfully")
        print(f"Snapshot {args.snapshot} pruned successfully.")
    except DestinationLockedError as e:
        print_error_and_exit(str(e))
    except ValueError as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except Exception as e:
        print_error_and_exit(f"Error pruning snapshot: {str(e)}")


def check_command(args: argparse.Namespace) -> None:
    """Rehash stored files; exits 1 and lists every mismatch if any are found."""
    try:
        logger.info("Starting integrity check")
        with _operations(args) as ops:
            all_valid, corrupted_items = ops.check(args.snapshot)
    except ValueError as e:
        print_error_and_exit(f"Invalid value: {str(e)}")
    except CorruptManifestError as e:
        print_error_and_exit(str(e))
    except Exception as e:
        print_error_and_exit(f"Error checking integrity: {str(e)}")

    if all_valid:
        logger.info("Integrity check passed")
        print("Integrity check passed. All file content is valid.")
        return

    print("\nIntegrity check FAILED. Corrupted content detected.\n")
    print(f"Found {len(corrupted_items)} corrupted files:")
    for i, item in enumerate(corrupted_items, 1):
        print(f"\n{i}. Snapshot {item['snapshot_id']} ({format_timestamp(item['timestamp'])}): {item['path']}")
        print(f"   Stored hash:     {item['stored_hash']}")
        print(f"   Calculated hash: {item['calculated_hash'] or 'unreadable'}")

    print("\nRecommendation: Restore affected files from an alternative backup if available.")
    sys.exit(EXIT_ABORTED)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hardsnap",
        description="Hard-link snapshot backups with content deduplication",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    # Global options go on the main parser so they're available for all commands
    parser.add_argument(
        "--destination",
        default="backups",
        help="Directory holding the snapshots"
    )
    parser.add_argument(
        "--config",
        default=None,
        help="INI file with engine settings (default: <destination>/hardsnap.ini if present)"
    )
    parser.add_argument(
        "--log-file",
        default="hardsnap.log",
        help="File receiving the log"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log debug messages"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Snapshot command
    snapshot_parser = subparsers.add_parser(
        "snapshot",
        help="Create a new snapshot of a directory"
    )
    snapshot_parser.add_argument(
        "--target-directory",
        required=True,
        help="Directory to take a snapshot of"
    )
    snapshot_parser.add_argument(
        "--force-rehash",
        action="store_true",
        help="Hash every file even if its size and modification time are unchanged"
    )
    snapshot_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of threads hashing and copying files"
    )

    # List command
    subparsers.add_parser(
        "list",
        help="List all snapshots with their sizes"
    )

    # Restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore a snapshot to a directory"
    )
    restore_parser.add_argument(
        "--snapshot-number",
        required=True,
        type=int,
        help="Snapshot ID to restore"
    )
    restore_parser.add_argument(
        "--output-directory",
        required=True,
        help="Directory to restore to (will be created if it doesn't exist)"
    )

    # Prune command
    prune_parser = subparsers.add_parser(
        "prune",
        help="Remove a snapshot"
    )
    prune_parser.add_argument(
        "--snapshot",
        type=int,
        required=True,
        help="Snapshot ID to prune"
    )

    # Check command
    check_parser = subparsers.add_parser(
        "check",
        help="Rehash snapshot files and compare them with their manifests"
    )
    check_parser.add_argument(
        "--snapshot",
        type=int,
        default=None,
        help="Snapshot ID to check (default: all)"
    )
    return parser


def main() -> None:
    """
    Main entry point for the hardsnap command line interface.
    Parses arguments and dispatches to appropriate command handlers.
    """
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.log_file, args.verbose)

    # Command dispatch
    command_handlers = {
        "snapshot": snapshot_command,
        "list": list_command,
        "restore": restore_command,
        "prune": prune_command,
        "check": check_command,
    }

    if args.command in command_handlers:
        command_handlers[args.command](args)
    else:
        parser.print_help()
        sys.exit(EXIT_ABORTED)


if __name__ == "__main__":
    main()
