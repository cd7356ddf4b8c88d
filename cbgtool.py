#!/usr/bin/env python3
"""
cbgtool - Command-line interface for ChessBase move data

Encodes PGN games into ChessBase move data blobs, decodes them back, and
checks that games survive the round trip.
"""

import sys
import os
import argparse
import logging
from pathlib import Path
from typing import Iterator, Optional, Tuple
import time

import chess.pgn

import cbgmoves


VERSION = "0.1.0"


# ============================================================================
# INPUT HELPERS
# ============================================================================

def load_key_provider(args) -> cbgmoves.KeyProvider:
    if args.keys:
        return cbgmoves.BinaryKeyProvider(args.keys)
    return cbgmoves.default_key_provider()


def check_mode(mode: Optional[int]):
    """Exit with a usage error if the encoding mode isn't supported."""
    if mode is None:
        return
    try:
        cbgmoves.encoding_mode(mode)
    except cbgmoves.UnsupportedEncodingError as e:
        print(f"fatal: {e}", file=sys.stderr)
        sys.exit(2)


def require_file(path: str) -> Path:
    file_path = Path(path)
    if not file_path.exists():
        print(f"fatal: file not found: {file_path}", file=sys.stderr)
        sys.exit(1)
    return file_path


def read_games(pgn_path: Path) -> Iterator[chess.pgn.Game]:
    with open(pgn_path, 'r') as f:
        while True:
            game = chess.pgn.read_game(f)
            if game is None:
                break
            yield game


def iter_blobs(data: bytes) -> Iterator[Tuple[int, bytes]]:
    """
    Split concatenated move data blobs using their length fields.

    Yields (offset, blob).
    """
    ofs = 0
    while ofs < len(data):
        if len(data) - ofs < cbgmoves.HEADER_SIZE:
            raise cbgmoves.FormatError(f"Truncated blob header at offset {ofs}")
        size = int.from_bytes(data[ofs + 1:ofs + 4], 'big')
        if size < cbgmoves.HEADER_SIZE or ofs + size > len(data):
            raise cbgmoves.FormatError(f"Invalid blob size {size} at offset {ofs}")
        yield ofs, data[ofs:ofs + size]
        ofs += size


def count_plies(game: chess.pgn.GameNode) -> int:
    """Number of moves in the whole tree, variations included."""
    count = 0
    pending = list(game.variations)
    while pending:
        node = pending.pop()
        count += 1
        pending.extend(node.variations)
    return count


# ============================================================================
# PROGRESS REPORTING
# ============================================================================

class ProgressReporter:
    """Progress reporter for long-running operations."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self.last_update = 0
        self.start_time = time.time()

    def update(self, current: int, force: bool = False):
        """Update progress display."""
        if self.quiet:
            return

        now = time.time()
        if not force and now - self.last_update < 0.5:
            return

        self.last_update = now
        elapsed = now - self.start_time
        rate = current / elapsed if elapsed > 0 else 0
        print(f"\rProcessed: {current:,} ({rate:.1f}/s)", end='', file=sys.stderr)

    def finish(self):
        """Complete progress display."""
        if not self.quiet:
            print(file=sys.stderr)


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def format_duration(seconds: float) -> str:
    """Seconds below a minute, otherwise minutes and seconds."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{int(seconds // 60)}m {int(seconds % 60)}s"


# ============================================================================
# COMMANDS
# ============================================================================

def cmd_encode(args):
    """Serialize every game of a PGN file into concatenated move data blobs."""
    check_mode(args.mode)
    pgn_path = require_file(args.pgn_file)
    codec = cbgmoves.MoveTreeCodec(load_key_provider(args))

    progress = ProgressReporter(quiet=args.quiet)
    game_count = 0
    total_size = 0

    if not args.quiet:
        print(f"Encoding: {pgn_path.name}", file=sys.stderr)

    with open(args.output, 'wb') as out:
        for game in read_games(pgn_path):
            blob = codec.serialize(game, args.mode)
            out.write(blob)
            game_count += 1
            total_size += len(blob)
            progress.update(game_count)

    progress.finish()
    elapsed = time.time() - progress.start_time

    if not args.quiet:
        print(f"Games: {game_count:,}", file=sys.stderr)
        print(f"Size: {format_size(total_size)}", file=sys.stderr)
        print(f"Completed in {format_duration(elapsed)}", file=sys.stderr)

    return 0


def cmd_decode(args):
    """Print every blob of a move data file as PGN."""
    data = require_file(args.blob_file).read_bytes()
    codec = cbgmoves.MoveTreeCodec(load_key_provider(args))

    for game_id, (ofs, blob) in enumerate(iter_blobs(data)):
        game = codec.deserialize(blob, check_legal_moves=not args.unchecked, game_id=game_id)
        print(game)
        print()

    return 0


def cmd_inspect(args):
    """List the blobs of a move data file."""
    data = require_file(args.blob_file).read_bytes()
    codec = cbgmoves.MoveTreeCodec(load_key_provider(args))

    print(f"{'OFFSET':<10} {'MODE':<6} {'SIZE':<10} {'SETUP':<6} {'PLIES':<8}")

    blob_count = 0
    for game_id, (ofs, blob) in enumerate(iter_blobs(data)):
        flags = blob[0]
        setup = 'yes' if flags & cbgmoves.FLAG_SETUP_POSITION else 'no'
        try:
            game = codec.deserialize(blob, check_legal_moves=False, game_id=game_id)
            plies = str(count_plies(game))
        except cbgmoves.CodecError as e:
            plies = f"error: {e}"
        print(f"{ofs:<10} {flags & cbgmoves.MODE_MASK:<6} {len(blob):<10,} {setup:<6} {plies:<8}")
        blob_count += 1

    print()
    print(f"Total: {blob_count:,} blobs, {format_size(len(data))}")

    return 0


def cmd_verify(args):
    """Round-trip every game of a PGN file through the codec."""
    check_mode(args.mode)
    pgn_path = require_file(args.pgn_file)
    codec = cbgmoves.MoveTreeCodec(load_key_provider(args))

    errors = []

    def report(msg):
        if not args.quiet:
            print(msg)

    report(f"Verifying {pgn_path.name}...")

    game_count = 0
    for game_no, game in enumerate(read_games(pgn_path)):
        game_count += 1
        try:
            blob = codec.serialize(game, args.mode)
            decoded = codec.deserialize(blob, game_id=game_no)
        except cbgmoves.CodecError as e:
            errors.append((game_no, str(e)))
            continue
        if not cbgmoves.move_trees_equal(game, decoded):
            errors.append((game_no, "decoded move tree differs"))

    if errors:
        report(f"✗ Found {len(errors)} games failing the round trip:")
        for game_no, msg in errors[:5]:
            report(f"  - Game {game_no}: {msg}")
        if len(errors) > 5:
            report(f"  ... and {len(errors) - 5} more")
        print()
        print(f"Errors found: {len(errors)}")
        return 5
    else:
        report(f"✓ Verified {game_count:,} games")
        print()
        print("All games round-trip.")
        return 0


# ============================================================================
# MAIN
# ============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='cbgtool',
        description='Encode and decode ChessBase move data',
    )

    parser.add_argument('--version', action='version', version=f'cbgtool {VERSION}')
    parser.add_argument('--keys', metavar='<file>', help='Key table file (default: $CBG_KEY_FILE)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log opcode traces')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # encode
    parser_encode = subparsers.add_parser('encode', help='Encode PGN games into move data blobs')
    parser_encode.add_argument('pgn_file', help='PGN file to encode')
    parser_encode.add_argument('output', help='Output file for the blobs')
    parser_encode.add_argument('--mode', type=int, help='Encoding mode (default: 0, 10 for Chess960)')
    parser_encode.add_argument('--quiet', action='store_true', help='Suppress progress output')

    # decode
    parser_decode = subparsers.add_parser('decode', help='Print move data blobs as PGN')
    parser_decode.add_argument('blob_file', help='File of concatenated blobs')
    parser_decode.add_argument('--unchecked', action='store_true', help="Don't validate move legality")

    # inspect
    parser_inspect = subparsers.add_parser('inspect', help='List move data blobs')
    parser_inspect.add_argument('blob_file', help='File of concatenated blobs')

    # verify
    parser_verify = subparsers.add_parser('verify', help='Round-trip PGN games through the codec')
    parser_verify.add_argument('pgn_file', help='PGN file to verify')
    parser_verify.add_argument('--mode', type=int, help='Encoding mode (default: 0, 10 for Chess960)')
    parser_verify.add_argument('--quiet', action='store_true', help='Only output errors')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    if not args.command:
        parser.print_help()
        return 1

    # Dispatch to command handlers
    commands = {
        'encode': cmd_encode,
        'decode': cmd_decode,
        'inspect': cmd_inspect,
        'verify': cmd_verify,
    }

    try:
        return commands[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"fatal: {e}", file=sys.stderr)
        if os.getenv('DEBUG'):
            raise
        return 1


if __name__ == '__main__':
    sys.exit(main())
