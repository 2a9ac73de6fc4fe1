"""
tilesparse Command Line Interface

Benchmarking and system diagnostics for the block-sparse pipeline.
"""

import argparse
import sys
from typing import List, Optional

from .benchmark import BenchmarkCommand
from .doctor import DoctorCommand


def main(args: Optional[List[str]] = None) -> int:
    """
    Main entry point for the tilesparse CLI.

    Returns:
        int: Exit code (0 for success, non-zero for error)
    """
    from .. import __version__

    parser = argparse.ArgumentParser(
        prog='tilesparse',
        description='tilesparse: block-sparse conversion and multiply on tile MMA units',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tilesparse benchmark --size 4096 --n 512
  tilesparse doctor --verbose

For command-specific help:
  tilesparse <command> --help
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default='WARNING',
        help='Log level for pipeline records (default: WARNING)'
    )

    parser.add_argument(
        '--log-json',
        action='store_true',
        help='Emit log records as JSON'
    )

    subparsers = parser.add_subparsers(
        dest='command',
        help='Available commands',
        metavar='<command>'
    )

    BenchmarkCommand.register(subparsers)
    DoctorCommand.register(subparsers)

    if args is None:
        args = sys.argv[1:]

    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    from ..monitoring import configure_logging
    configure_logging(level=parsed_args.log_level, json_format=parsed_args.log_json)

    try:
        if parsed_args.command == 'benchmark':
            return BenchmarkCommand.execute(parsed_args)
        elif parsed_args.command == 'doctor':
            return DoctorCommand.execute(parsed_args)
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        print("\n🛑 Operation cancelled by user")
        return 130
    except Exception as e:
        print(f"❌ Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
