#!/usr/bin/env python3
"""
ChessBase move-tree codec

Serializes the move tree of a chess game (main line, variations, setup
position and Chess960 start arrangement) into the compact, obfuscated binary
move format of the ChessBase game file, and parses it back.

Positions and move trees are python-chess objects (chess.Board and
chess.pgn.Game); this module only deals with the bytes.
"""

import logging
import os
import random
import struct
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import chess
import chess.pgn


log = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

# Move data header: flags byte followed by a 24-bit big-endian total length
HEADER_SIZE = 4
FLAG_SETUP_POSITION = 0x40
FLAG_UNKNOWN = 0x80          # Observed set in a handful of games, meaning unknown
MODE_MASK = 0x3F
MAX_BLOB_SIZE = (1 << 24) - 1

SETUP_RECORD_SIZE = 28
CHESS960_RECORD_SIZE = 8
SETUP_RECORD_VERSION = 1

REGULAR_CHESS_SP = 518

OPCODE_NULL_MOVE = 0
OPCODE_TWO_BYTES = 235
OPCODE_IGNORE = 236
OPCODE_START_VARIANT = 254
OPCODE_END_VARIANT = 255

# Promotion piece <-> 2-bit code, shared by both move encoders
PROMOTION_TO_CODE = {
    chess.QUEEN: 0,
    chess.ROOK: 1,
    chess.BISHOP: 2,
    chess.KNIGHT: 3,
}

CODE_TO_PROMOTION = {code: piece for piece, code in PROMOTION_TO_CODE.items()}

# Piece codes in the setup position bitstream
PIECE_TO_SETUP_CODE = {
    chess.KING: 1,
    chess.QUEEN: 2,
    chess.KNIGHT: 3,
    chess.BISHOP: 4,
    chess.ROOK: 5,
    chess.PAWN: 6,
}

SETUP_CODE_TO_PIECE = {code: piece for piece, code in PIECE_TO_SETUP_CODE.items()}


def to_sqi(square: int) -> int:
    """
    Convert a python-chess square to the square index used in the move data.

    The format numbers squares column by column (a1=0, a2=1, ..., h8=63),
    python-chess numbers them rank by rank.
    """
    return chess.square_file(square) * 8 + chess.square_rank(square)


def from_sqi(sqi: int) -> int:
    """Convert a move data square index back to a python-chess square."""
    return chess.square(sqi // 8, sqi % 8)


# ============================================================================
# ERRORS
# ============================================================================

class CodecError(ValueError):
    """Base class for all move data errors."""


class FormatError(CodecError):
    """Malformed or truncated move data."""


class UnsupportedEncodingError(FormatError):
    """The encoding mode selects a codec or chess variant that isn't supported."""


class MoveDecodingError(CodecError):
    """
    A move in the stream couldn't be decoded.

    The game parsed so far is kept in ``game`` so callers can salvage it.
    """

    def __init__(self, message: str, game: Optional[chess.pgn.Game] = None):
        super().__init__(message)
        self.game = game


class MoveEncodingError(CodecError):
    """A move couldn't be expressed as an opcode."""


class TrackerIntegrityError(CodecError):
    """The piece location tracker disagrees with the board."""


# ============================================================================
# PART 1: BYTE CIPHER AND KEY TABLES
# ============================================================================

KEY_TABLE_SIZE = 256


def _check_key_pair(encrypt_table: Sequence[int], decrypt_table: Sequence[int]):
    """Ensure the tables are permutations of 0..255 and inverses of each other."""
    for table in (encrypt_table, decrypt_table):
        if len(table) != KEY_TABLE_SIZE or sorted(table) != list(range(KEY_TABLE_SIZE)):
            raise ValueError("Key table must be a permutation of 0..255")
    for value in range(KEY_TABLE_SIZE):
        if decrypt_table[encrypt_table[value]] != value:
            raise ValueError("Decryption key doesn't invert the encryption key")


class ByteCipher:
    """
    Byte substitution with a running counter folded in.

    The counter advances once per move, not per byte, and wraps at 256.
    With counter_after_substitution the counter is added to the substituted
    byte, otherwise it's added to the plain byte before substitution.
    """

    def __init__(self, encrypt_table: Sequence[int], decrypt_table: Sequence[int],
                 counter_after_substitution: bool):
        _check_key_pair(encrypt_table, decrypt_table)
        self.encrypt_table = tuple(encrypt_table)
        self.decrypt_table = tuple(decrypt_table)
        self.counter_after_substitution = counter_after_substitution
        self.counter = 0

    @classmethod
    def from_provider(cls, provider: 'KeyProvider', key_no: int,
                      counter_after_substitution: bool) -> 'ByteCipher':
        """Load the (encrypt, decrypt) pair stored at key_no and key_no + 1."""
        return cls(provider.move_key(key_no), provider.move_key(key_no + 1),
                   counter_after_substitution)

    def reset(self):
        self.counter = 0

    def advance(self):
        self.counter = (self.counter + 1) % 256

    def encode_byte(self, value: int, counter: int) -> int:
        if self.counter_after_substitution:
            return (self.encrypt_table[value] + counter) % 256
        return self.encrypt_table[(value + counter) % 256]

    def decode_byte(self, value: int, counter: int) -> int:
        if self.counter_after_substitution:
            return self.decrypt_table[(value - counter) % 256]
        return (self.decrypt_table[value] - counter) % 256

    def encode(self, value: int) -> int:
        return self.encode_byte(value, self.counter)

    def decode(self, value: int) -> int:
        return self.decode_byte(value, self.counter)


class KeyProvider:
    """Supplies the 256-entry substitution tables by key number."""

    def move_key(self, key_no: int) -> Sequence[int]:
        raise NotImplementedError


class BinaryKeyProvider(KeyProvider):
    """
    Key tables read from a binary file.

    The file is a plain concatenation of 256-byte tables; table N starts at
    offset 256 * N. Encryption tables sit at even numbers, the matching
    decryption table directly after.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        data = self.path.read_bytes()
        if not data or len(data) % KEY_TABLE_SIZE:
            raise FormatError(f"Key file size must be a multiple of {KEY_TABLE_SIZE}: {self.path}")
        self.tables: List[bytes] = [
            data[ofs:ofs + KEY_TABLE_SIZE] for ofs in range(0, len(data), KEY_TABLE_SIZE)
        ]

    def move_key(self, key_no: int) -> Sequence[int]:
        if not 0 <= key_no < len(self.tables):
            raise ValueError(f"No key table {key_no} in {self.path} ({len(self.tables)} tables)")
        return self.tables[key_no]


class GeneratedKeyProvider(KeyProvider):
    """
    Deterministic key tables generated from a seed.

    Even key numbers are seeded random permutations, odd key numbers the
    inverse of the table before them. Blobs written with these tables can be
    read back by this library but not by other ChessBase readers.
    """

    def __init__(self, seed: int = 0):
        self.seed = seed
        self._tables: Dict[int, Tuple[int, ...]] = {}

    def move_key(self, key_no: int) -> Sequence[int]:
        if key_no < 0:
            raise ValueError(f"Invalid key number: {key_no}")
        if key_no not in self._tables:
            base = key_no & ~1
            permutation = list(range(KEY_TABLE_SIZE))
            random.Random((self.seed << 16) | base).shuffle(permutation)
            inverse = [0] * KEY_TABLE_SIZE
            for plain, cipher in enumerate(permutation):
                inverse[cipher] = plain
            self._tables[base] = tuple(permutation)
            self._tables[base + 1] = tuple(inverse)
        return self._tables[key_no]


@lru_cache(maxsize=None)
def default_key_provider() -> KeyProvider:
    """
    Key provider used when none is given.

    Reads the tables from the file named by CBG_KEY_FILE, falling back to
    generated tables.
    """
    key_file = os.getenv('CBG_KEY_FILE')
    if key_file:
        return BinaryKeyProvider(key_file)
    log.warning("CBG_KEY_FILE not set, using generated key tables; "
                "move data won't be readable by other ChessBase readers")
    return GeneratedKeyProvider()


# ============================================================================
# PART 2: OPCODE TABLES
# ============================================================================

# Number of opcodes reserved per piece type: king 8 directions + 2 castles,
# sliders 7 strides per direction, knight 8 jumps, pawn 4 moves
OPCODE_RANGE_SIZE = {
    chess.KING: 10,
    chess.QUEEN: 28,
    chess.ROOK: 14,
    chess.BISHOP: 14,
    chess.KNIGHT: 8,
    chess.PAWN: 4,
}

# Opcode ranges in opcode order, starting at opcode 1.
# The two-byte escape opcode follows the last range.
OPCODE_RANGE_ORDER = [
    (chess.KING, 0),
    (chess.QUEEN, 0),
    (chess.ROOK, 0), (chess.ROOK, 1),
    (chess.BISHOP, 0), (chess.BISHOP, 1),
    (chess.KNIGHT, 0), (chess.KNIGHT, 1),
] + [(chess.PAWN, no) for no in range(8)] + [
    (chess.QUEEN, 1), (chess.QUEEN, 2),
    (chess.ROOK, 2),
    (chess.BISHOP, 2),
    (chess.KNIGHT, 2),
]

# (dfile, drank) per opcode offset
KING_DIRECTIONS = [(0, 1), (1, 1), (1, 0), (1, -1), (0, -1), (-1, -1), (-1, 0), (-1, 1)]
KNIGHT_JUMPS = [(2, 1), (1, 2), (-1, 2), (-2, 1), (-2, -1), (-1, -2), (1, -2), (2, -1)]

# Seen from white; black mirrors both components
PAWN_STEPS = [(0, 1), (0, 2), (1, 1), (-1, 1)]

# Slider axes: vertical, horizontal, diagonal, anti-diagonal.
# Rooks use the first two, bishops the last two, queens all four.
SLIDER_AXES = [(0, 1), (1, 0), (1, 1), (1, -1)]
SLIDER_FIRST_AXIS = {chess.QUEEN: 0, chess.ROOK: 0, chess.BISHOP: 2}

KING_DIRECTION_INDEX = {delta: ofs for ofs, delta in enumerate(KING_DIRECTIONS)}
KNIGHT_JUMP_INDEX = {delta: ofs for ofs, delta in enumerate(KNIGHT_JUMPS)}
PAWN_STEP_INDEX = {delta: ofs for ofs, delta in enumerate(PAWN_STEPS)}


def _build_opcode_tables() -> Tuple[Dict[Tuple[int, int], int], Dict[int, Tuple[int, int, int]]]:
    """Map (piece type, instance) to its first opcode, and every opcode back to (piece type, instance, offset)."""
    range_start = {}
    opcode_map = {}
    opcode = 1
    for piece_type, instance in OPCODE_RANGE_ORDER:
        range_start[(piece_type, instance)] = opcode
        for ofs in range(OPCODE_RANGE_SIZE[piece_type]):
            opcode_map[opcode + ofs] = (piece_type, instance, ofs)
        opcode += OPCODE_RANGE_SIZE[piece_type]
    assert opcode == OPCODE_TWO_BYTES, f"Opcode ranges end at {opcode}, expected {OPCODE_TWO_BYTES}"
    return range_start, opcode_map


OPCODE_RANGE_START, OPCODE_MAP = _build_opcode_tables()


def _offset_square(square: int, dfile: int, drank: int) -> Optional[int]:
    """Square at the given offset, or None if it falls off the board."""
    file = chess.square_file(square) + dfile
    rank = chess.square_rank(square) + drank
    if 0 <= file < 8 and 0 <= rank < 8:
        return chess.square(file, rank)
    return None


def slider_offset(piece_type: int, from_square: int, to_square: int) -> int:
    """
    Offset of a queen, rook or bishop move within its opcode range.

    Deltas wrap around the board (mod 8), so every legal move maps to one of
    the 7 strides along one of the piece's axes.
    """
    dx = (chess.square_file(to_square) - chess.square_file(from_square)) % 8
    dy = (chess.square_rank(to_square) - chess.square_rank(from_square)) % 8
    if dx == 0 and dy != 0:
        axis, stride = 0, (dy + 6) % 7
    elif dx != 0 and dy == 0:
        axis, stride = 1, (dx + 6) % 7
    elif dx == dy and dx != 0:
        axis, stride = 2, (dx + 6) % 7
    elif dx + dy == 8:
        axis, stride = 3, (dx + 6) % 7
    else:
        raise MoveEncodingError(f"Not a sliding move: {chess.square_name(from_square)}{chess.square_name(to_square)}")

    axis -= SLIDER_FIRST_AXIS[piece_type]
    if not 0 <= axis < OPCODE_RANGE_SIZE[piece_type] // 7:
        raise MoveEncodingError(
            f"{chess.piece_name(piece_type)} can't move {chess.square_name(from_square)}{chess.square_name(to_square)}")
    return axis * 7 + stride


def slider_target(piece_type: int, square: int, ofs: int) -> int:
    """Inverse of slider_offset."""
    axis = ofs // 7 + SLIDER_FIRST_AXIS[piece_type]
    stride = ofs % 7 + 1
    dfile, drank = SLIDER_AXES[axis]
    file = (chess.square_file(square) + dfile * stride) % 8
    rank = (chess.square_rank(square) + drank * stride) % 8
    return chess.square(file, rank)


# ============================================================================
# PART 3: CHESS960 START POSITIONS
# ============================================================================

@dataclass(frozen=True)
class Chess960Start:
    """A Chess960 start arrangement number and the origin squares castling depends on."""
    number: int
    white_king: int
    black_king: int
    white_h_rook: int
    white_a_rook: int
    black_h_rook: int
    black_a_rook: int

    @property
    def is_regular(self) -> bool:
        return self.number == REGULAR_CHESS_SP

    def king_origin(self, color: chess.Color) -> int:
        return self.white_king if color == chess.WHITE else self.black_king

    def rook_origin(self, color: chess.Color, kingside: bool) -> int:
        if color == chess.WHITE:
            return self.white_h_rook if kingside else self.white_a_rook
        return self.black_h_rook if kingside else self.black_a_rook

    def origin_sqis(self) -> Tuple[int, ...]:
        """The six origin squares in the order they're stored in the setup record."""
        return tuple(to_sqi(square) for square in (
            self.white_king, self.black_king,
            self.white_h_rook, self.white_a_rook,
            self.black_h_rook, self.black_a_rook,
        ))


@lru_cache(maxsize=None)
def chess960_board(number: int) -> chess.Board:
    """The start position for a Chess960 number. Shared; don't modify."""
    if not 0 <= number < 960:
        raise ValueError("Start position must be between 0 and 959")
    return chess.Board.from_chess960_pos(number)


@lru_cache(maxsize=None)
def chess960_start(number: int) -> Chess960Start:
    board = chess960_board(number)
    a_rook, h_rook = sorted(board.pieces(chess.ROOK, chess.WHITE))
    return Chess960Start(
        number=number,
        white_king=board.king(chess.WHITE),
        black_king=board.king(chess.BLACK),
        white_h_rook=h_rook,
        white_a_rook=a_rook,
        black_h_rook=chess.square_mirror(h_rook),
        black_a_rook=chess.square_mirror(a_rook),
    )


@lru_cache(maxsize=None)
def _back_rank_numbers() -> Dict[str, int]:
    """White back rank (e.g. 'RNBQKBNR') -> Chess960 number."""
    numbers = {}
    for number in range(960):
        board = chess960_board(number)
        rank = "".join(board.piece_at(chess.square(file, 0)).symbol() for file in range(8))
        numbers[rank] = number
    return numbers


def chess960_number_from_back_rank(board: chess.Board) -> Optional[int]:
    """Chess960 number matching the white back rank of a board, if it is a start arrangement."""
    symbols = []
    for file in range(8):
        piece = board.piece_at(chess.square(file, 0))
        if piece is None or piece.color != chess.WHITE:
            return None
        symbols.append(piece.symbol())
    return _back_rank_numbers().get("".join(symbols))


def chess960_matches(number: int, origin_sqis: Sequence[int]) -> bool:
    """Check whether the kings and rooks of a start arrangement stand on the given origin squares."""
    if any(not 0 <= sqi < 64 for sqi in origin_sqis):
        return False
    board = chess960_board(number)
    expected = [
        chess.Piece(chess.KING, chess.WHITE),
        chess.Piece(chess.KING, chess.BLACK),
        chess.Piece(chess.ROOK, chess.WHITE),
        chess.Piece(chess.ROOK, chess.WHITE),
        chess.Piece(chess.ROOK, chess.BLACK),
        chess.Piece(chess.ROOK, chess.BLACK),
    ]
    return all(board.piece_at(from_sqi(sqi)) == piece for sqi, piece in zip(origin_sqis, expected))


def reconcile_chess960_number(stored: int, origin_sqis: Sequence[int], board: chess.Board,
                              game_id: int = 0) -> int:
    """
    Determine the Chess960 number of a setup position.

    The stored number is wrong in some databases. If it doesn't agree with
    the stored king and rook origin squares, try the number of the actual
    back rank arrangement, then any arrangement with matching origin squares,
    and finally give up and return the stored number.
    """
    if 0 <= stored < 960:
        if chess960_matches(stored, origin_sqis):
            return stored
        log.warning("The king and rook origin squares don't match Chess960 start position %d in game %d",
                    stored, game_id)
    else:
        log.warning("Invalid Chess960 start position in game %d: %d", game_id, stored)

    number = chess960_number_from_back_rank(board)
    if number is not None and chess960_matches(number, origin_sqis):
        log.debug("Deduced the Chess960 start position in game %d to be %d", game_id, number)
        return number

    for number in range(960):
        if chess960_matches(number, origin_sqis):
            log.debug("Using Chess960 start position %d in game %d", number, game_id)
            return number

    return stored


def _castling_fits(start: Chess960Start, board: chess.Board) -> bool:
    """Check that every castling right of the board refers to the king and rooks of a start arrangement."""
    rights = board.clean_castling_rights()
    for color in chess.COLORS:
        back_rank = chess.BB_RANK_1 if color == chess.WHITE else chess.BB_RANK_8
        rooks = list(chess.SquareSet(rights & back_rank))
        if not rooks:
            continue
        king = start.king_origin(color)
        if board.king(color) != king:
            return False
        for rook in rooks:
            kingside = chess.square_file(rook) > chess.square_file(king)
            if rook != start.rook_origin(color, kingside):
                return False
    return True


def start_descriptor(board: chess.Board) -> Chess960Start:
    """
    Chess960 start arrangement of a game's initial position.

    Regular chess is 518. For Chess960 boards that aren't a start position
    themselves, the first arrangement agreeing with the castling rights is
    used (518 preferred); without castling rights the choice doesn't matter.
    """
    if not board.chess960:
        return chess960_start(REGULAR_CHESS_SP)
    number = board.chess960_pos(ignore_turn=True, ignore_castling=True)
    if number is not None:
        return chess960_start(number)
    for number in [REGULAR_CHESS_SP] + list(range(960)):
        start = chess960_start(number)
        if _castling_fits(start, board):
            return start
    return chess960_start(REGULAR_CHESS_SP)


def castling_move(board: chess.Board, kingside: bool, start: Chess960Start) -> chess.Move:
    """Castling move for the side to move, in the board's own notation."""
    color = board.turn
    back_rank = 0 if color == chess.WHITE else 7
    king = start.king_origin(color)
    rook = start.rook_origin(color, kingside)
    if board.piece_at(king) != chess.Piece(chess.KING, color):
        raise MoveDecodingError(f"Castles without a king on {chess.square_name(king)}")
    if board.piece_at(rook) != chess.Piece(chess.ROOK, color):
        raise MoveDecodingError(f"Castles without a rook on {chess.square_name(rook)}")
    if board.chess960:
        return chess.Move(king, rook)
    return chess.Move(king, chess.square(6 if kingside else 2, back_rank))


def check_moving_piece(board: chess.Board, move: chess.Move):
    """Reject a move that doesn't start from a piece of the side to move."""
    if not move:
        return
    piece = board.piece_at(move.from_square)
    if piece is None or piece.color != board.turn:
        raise MoveDecodingError(
            f"No {chess.COLOR_NAMES[board.turn]} piece on {chess.square_name(move.from_square)} for move {move.uci()}")


# ============================================================================
# PART 4: PIECE LOCATION TRACKER
# ============================================================================

# Tracked instances per piece type and color. More pieces than this of one
# kind (after promotions) are not tracked and are moved with two-byte opcodes.
TRACKER_CAPACITY = {
    chess.KING: 1,
    chess.QUEEN: 3,
    chess.ROOK: 3,
    chess.BISHOP: 3,
    chess.KNIGHT: 3,
    chess.PAWN: 8,
}


def _build_slot_layout() -> Tuple[Dict[Tuple[int, chess.Color], Tuple[int, int]], int]:
    layout = {}
    ofs = 0
    for color in (chess.WHITE, chess.BLACK):
        for piece_type in (chess.KING, chess.QUEEN, chess.ROOK, chess.BISHOP, chess.KNIGHT, chess.PAWN):
            layout[(piece_type, color)] = (ofs, ofs + TRACKER_CAPACITY[piece_type])
            ofs += TRACKER_CAPACITY[piece_type]
    return layout, ofs


SLOT_LAYOUT, SLOT_COUNT = _build_slot_layout()


class PieceLocationTracker:
    """
    Where every tracked piece stands, by (piece type, color, instance number).

    Moves refer to pieces by instance number, so the numbering must evolve
    exactly as the writer's did: pieces are numbered in scan order, promoted
    pieces take the first free slot, and captured pieces (except pawns) make
    the higher numbered pieces of their kind shift down.

    Immutable: apply_move returns a new tracker, which lets the decoder keep
    one per open variation.
    """

    __slots__ = ('squares', 'start')

    def __init__(self, squares: Tuple[Optional[int], ...], start: Chess960Start):
        self.squares = squares
        self.start = start

    @classmethod
    def from_position(cls, board: chess.Board, reverse_scan_order: bool = False,
                      start: Optional[Chess960Start] = None) -> 'PieceLocationTracker':
        """Number the pieces of a position by scanning the squares in move data order."""
        if start is None:
            start = start_descriptor(board)
        squares: List[Optional[int]] = [None] * SLOT_COUNT
        for i in range(64):
            square = from_sqi(63 - i if reverse_scan_order else i)
            piece = board.piece_at(square)
            if piece is None:
                continue
            lo, hi = SLOT_LAYOUT[(piece.piece_type, piece.color)]
            for slot in range(lo, hi):
                if squares[slot] is None:
                    squares[slot] = square
                    break
        return cls(tuple(squares), start)

    def slot_square(self, piece_type: int, color: chess.Color, instance: int) -> Optional[int]:
        """Square of a piece instance, or None if there is no such piece."""
        lo, hi = SLOT_LAYOUT[(piece_type, color)]
        if 0 <= instance < hi - lo:
            return self.squares[lo + instance]
        return None

    def instance_at(self, piece_type: int, color: chess.Color, square: int) -> Optional[int]:
        """Instance number of the piece on a square, or None if it isn't tracked."""
        lo, hi = SLOT_LAYOUT[(piece_type, color)]
        for slot in range(lo, hi):
            if self.squares[slot] == square:
                return slot - lo
        return None

    def apply_move(self, board: chess.Board, move: chess.Move) -> 'PieceLocationTracker':
        """
        Tracker after a move. The board is the position before the move.

        No check is made that the move is legal.
        """
        if not move:
            return self
        piece = board.piece_at(move.from_square)
        if piece is None:
            return self

        squares = list(self.squares)
        color = piece.color
        back_rank = 0 if color == chess.WHITE else 7
        castling = board.is_castling(move)
        kingside = castling and board.is_kingside_castling(move)

        captured_square = None
        captured = None
        if not castling:
            captured_square = move.to_square
            if board.is_en_passant(move):
                captured_square = chess.square(chess.square_file(move.to_square),
                                               chess.square_rank(move.from_square))
            captured = board.piece_at(captured_square)
            if captured is not None and captured.color == color:
                captured = None

        lo, hi = SLOT_LAYOUT[(piece.piece_type, color)]
        slot = self._find(squares, lo, hi, move.from_square)
        if slot is not None:
            if castling:
                squares[slot] = chess.square(6 if kingside else 2, back_rank)
            else:
                squares[slot] = move.to_square

        if move.promotion and piece.piece_type == chess.PAWN:
            # Pawn slots aren't compacted; the promoted piece gets the first free slot or is dropped
            if slot is not None:
                squares[slot] = None
            lo, hi = SLOT_LAYOUT[(move.promotion, color)]
            free = self._find(squares, lo, hi, None)
            if free is not None:
                squares[free] = move.to_square

        if castling:
            lo, hi = SLOT_LAYOUT[(chess.ROOK, color)]
            rook_slot = self._find(squares, lo, hi, self.start.rook_origin(color, kingside))
            if rook_slot is not None:
                squares[rook_slot] = chess.square(5 if kingside else 3, back_rank)

        if captured is not None:
            lo, hi = SLOT_LAYOUT[(captured.piece_type, captured.color)]
            if captured.piece_type == chess.PAWN:
                pawn_slot = self._find(squares, lo, hi, captured_square)
                if pawn_slot is not None:
                    squares[pawn_slot] = None
            else:
                kept = [square for square in squares[lo:hi] if square != captured_square]
                squares[lo:hi] = kept + [None] * (hi - lo - len(kept))

        return PieceLocationTracker(tuple(squares), self.start)

    @staticmethod
    def _find(squares: List[Optional[int]], lo: int, hi: int, square: Optional[int]) -> Optional[int]:
        for slot in range(lo, hi):
            if squares[slot] == square:
                return slot
        return None

    def validate(self, board: chess.Board):
        """
        Cross-check the tracker against a board. Only meant for debugging.

        Raises TrackerIntegrityError if a tracked square doesn't hold the
        tracked piece, if non-pawn slots have gaps, or if pieces on the board
        are unaccounted for (pieces beyond the slot capacity excepted).
        """
        found = 0
        for (piece_type, color), (lo, hi) in SLOT_LAYOUT.items():
            expected = chess.Piece(piece_type, color)
            end_reached = False
            for slot in range(lo, hi):
                square = self.squares[slot]
                if square is None:
                    end_reached = True
                    continue
                if end_reached and piece_type != chess.PAWN:
                    raise TrackerIntegrityError(f"{expected.symbol()} slots not compacted")
                if board.piece_at(square) != expected:
                    raise TrackerIntegrityError(
                        f"Expected {expected.symbol()} on {chess.square_name(square)} in {board.fen()}")
                found += 1
            if piece_type != chess.PAWN:
                # More pieces of this kind than slots; count the untracked ones
                for square in board.pieces(piece_type, color):
                    if square not in self.squares[lo:hi]:
                        found += 1

        if found != len(board.piece_map()):
            raise TrackerIntegrityError(f"Tracker is missing pieces in {board.fen()}")


# ============================================================================
# PART 5: COMPACT MOVE ENCODER
# ============================================================================

class CompactOpcodeEncoder:
    """
    The default move encoder; most moves are encoded as a single byte.

    An opcode selects a piece instance and a move geometry relative to it.
    Moves that can't be expressed that way (promotions, untracked pieces,
    Chess960 castles) use a two-byte escape. Variations are bracketed by
    START_VARIANT / END_VARIANT opcodes in a pre-order walk of the tree.

    Holds the cipher counter of the current pass; not reentrant.
    """

    def __init__(self, key_no: int, counter_after_substitution: bool, reverse_scan_order: bool,
                 key_provider: Optional[KeyProvider] = None, integrity_checks: bool = False):
        provider = key_provider or default_key_provider()
        self.cipher = ByteCipher.from_provider(provider, key_no, counter_after_substitution)
        self.reverse_scan_order = reverse_scan_order
        self.integrity_checks = integrity_checks

    def _put(self, out: bytearray, value: int):
        out.append(self.cipher.encode(value))

    def encode(self, game: chess.pgn.GameNode, start: Optional[Chess960Start] = None) -> bytes:
        """Encode the whole move tree below a game root."""
        board = game.board()
        if start is None:
            start = start_descriptor(board)
        self.cipher.reset()
        out = bytearray()

        tracker = PieceLocationTracker.from_position(board, self.reverse_scan_order, start)
        # Each frame: node, position at node, tracker at node, next child to visit
        stack = [[game, board, tracker, 0]]
        while stack:
            frame = stack[-1]
            node, board, tracker, index = frame
            children = node.variations

            if index == 0 and self.integrity_checks:
                tracker.validate(board)

            if not children:
                self._put(out, OPCODE_END_VARIANT)
                stack.pop()
                continue
            if index >= len(children):
                stack.pop()
                continue
            frame[3] = index + 1

            move = children[index].move
            try:
                opcode = self.encode_move(move, board, tracker, start)
                special = self.encode_special_move(move, board) if opcode == OPCODE_TWO_BYTES else None
            except MoveEncodingError as e:
                # Can't happen for trees of legal moves; drop the rest of this line
                log.warning("Failed to encode illegal move %s: %s", move.uci(), e)
                self._put(out, OPCODE_END_VARIANT)
                continue

            if index + 1 < len(children):
                self._put(out, OPCODE_START_VARIANT)
            self._put(out, opcode)
            if special is None:
                log.debug("Serialized move %s to opcode %02X", move.uci(), opcode)
            else:
                self._put(out, special >> 8)
                self._put(out, special & 0xFF)
                log.debug("Serialized move %s to opcode %04X", move.uci(), special)
            self.cipher.advance()

            child_board = board.copy(stack=False)
            child_board.push(move)
            stack.append([children[index], child_board, tracker.apply_move(board, move), 0])

        return bytes(out)

    def encode_move(self, move: chess.Move, board: chess.Board, tracker: PieceLocationTracker,
                    start: Chess960Start) -> int:
        """Opcode for a move; OPCODE_TWO_BYTES if it needs the two-byte escape."""
        if not move:
            return OPCODE_NULL_MOVE

        if not start.is_regular and board.is_castling(move):
            return OPCODE_TWO_BYTES

        piece = board.piece_at(move.from_square)
        if piece is None:
            raise MoveEncodingError(f"No piece on {chess.square_name(move.from_square)}")

        instance = tracker.instance_at(piece.piece_type, piece.color, move.from_square)
        first = OPCODE_RANGE_START.get((piece.piece_type, instance)) if instance is not None else None
        if first is None or (piece.piece_type == chess.PAWN and move.promotion):
            return OPCODE_TWO_BYTES

        dfile = chess.square_file(move.to_square) - chess.square_file(move.from_square)
        drank = chess.square_rank(move.to_square) - chess.square_rank(move.from_square)

        if piece.piece_type == chess.PAWN:
            forward = 1 if piece.color == chess.WHITE else -1
            ofs = PAWN_STEP_INDEX.get((dfile * forward, drank * forward))
        elif piece.piece_type == chess.KING:
            if board.is_castling(move):
                ofs = 8 if board.is_kingside_castling(move) else 9
            else:
                ofs = KING_DIRECTION_INDEX.get((dfile, drank))
        elif piece.piece_type == chess.KNIGHT:
            ofs = KNIGHT_JUMP_INDEX.get((dfile, drank))
        else:
            ofs = slider_offset(piece.piece_type, move.from_square, move.to_square)

        if ofs is None:
            raise MoveEncodingError(f"Can't encode illegal move: {move.uci()}")
        return first + ofs

    def encode_special_move(self, move: chess.Move, board: chess.Board) -> int:
        """
        16-bit value following the two-byte escape opcode.

        Bits 0-5:   from square
        Bits 6-11:  to square
        Bits 12-13: promotion piece (0=Q, 1=R, 2=B, 3=N)

        Chess960 castles store the king's destination as both squares.
        """
        if board.is_castling(move):
            back_rank = 0 if board.turn == chess.WHITE else 7
            sqi = to_sqi(chess.square(6 if board.is_kingside_castling(move) else 2, back_rank))
            return sqi * 64 + sqi
        code = PROMOTION_TO_CODE.get(move.promotion, 0)
        return to_sqi(move.from_square) + to_sqi(move.to_square) * 64 + code * 4096

    def decode(self, data: bytes, game: chess.pgn.Game, check_legal_moves: bool = True,
               start: Optional[Chess960Start] = None) -> chess.pgn.Game:
        """
        Decode move data into an empty game root.

        With check_legal_moves every move is validated and an illegal one is
        an error; otherwise the moves are trusted as they are.
        """
        board = game.board()
        if start is None:
            start = start_descriptor(board)
        self.cipher.reset()

        node: chess.pgn.GameNode = game
        tracker = PieceLocationTracker.from_position(board, self.reverse_scan_order, start)
        stack: List[Tuple[chess.pgn.GameNode, chess.Board, PieceLocationTracker]] = []
        pos = 0

        try:
            while True:
                if pos >= len(data):
                    if stack:
                        raise MoveDecodingError("Move data ended abruptly")
                    log.debug("Move data ended without an end marker")
                    break
                opcode = self.cipher.decode(data[pos])
                pos += 1

                if opcode == OPCODE_IGNORE:
                    # Unknown purpose; skipping it reproduces the game
                    continue
                if OPCODE_IGNORE < opcode < OPCODE_START_VARIANT:
                    log.warning("Unknown opcode in game data, ignoring: 0x%02X", opcode)
                    continue
                if opcode == OPCODE_START_VARIANT:
                    stack.append((node, board.copy(stack=False), tracker))
                    continue
                if opcode == OPCODE_END_VARIANT:
                    # Also marks the end of the game
                    if not stack:
                        break
                    node, board, tracker = stack.pop()
                    continue

                if opcode == OPCODE_TWO_BYTES:
                    if pos + 2 > len(data):
                        raise MoveDecodingError("Move data ended abruptly")
                    value = self.cipher.decode(data[pos]) * 256 + self.cipher.decode(data[pos + 1])
                    pos += 2
                    move = self._decode_two_byte_move(value, board, start)
                    log.debug("Parsed opcode %04X to move %s", value, move.uci())
                else:
                    move = self._decode_single_byte_move(opcode, board, tracker, start)
                    log.debug("Parsed opcode %02X to move %s", opcode, move.uci())

                if check_legal_moves and move and not board.is_legal(move):
                    raise MoveDecodingError(f"Illegal move {move.uci()} in position {board.fen()}")
                check_moving_piece(board, move)

                tracker = tracker.apply_move(board, move)
                node = node.add_variation(move)
                board.push(move)

                if self.integrity_checks:
                    tracker.validate(board)

                self.cipher.advance()
        except MoveDecodingError as e:
            e.game = game
            raise

        return game

    def _decode_single_byte_move(self, opcode: int, board: chess.Board, tracker: PieceLocationTracker,
                                 start: Chess960Start) -> chess.Move:
        if opcode == OPCODE_NULL_MOVE:
            return chess.Move.null()
        if opcode not in OPCODE_MAP:
            raise MoveDecodingError(f"Invalid opcode: {opcode}")

        piece_type, instance, ofs = OPCODE_MAP[opcode]
        color = board.turn
        square = tracker.slot_square(piece_type, color, instance)
        if square is None:
            raise MoveDecodingError(
                f"No piece coordinate for {chess.COLOR_NAMES[color]} {chess.piece_name(piece_type)} number {instance}")

        if piece_type == chess.KING:
            if ofs == 8:
                return castling_move(board, True, start)
            if ofs == 9:
                return castling_move(board, False, start)
            target = _offset_square(square, *KING_DIRECTIONS[ofs])
        elif piece_type == chess.KNIGHT:
            target = _offset_square(square, *KNIGHT_JUMPS[ofs])
        elif piece_type == chess.PAWN:
            forward = 1 if color == chess.WHITE else -1
            dfile, drank = PAWN_STEPS[ofs]
            target = _offset_square(square, dfile * forward, drank * forward)
        else:
            target = slider_target(piece_type, square, ofs)

        if target is None:
            raise MoveDecodingError(f"Invalid move with opcode: {opcode}")
        return chess.Move(square, target)

    def _decode_two_byte_move(self, value: int, board: chess.Board, start: Chess960Start) -> chess.Move:
        src = from_sqi(value % 64)
        dst = from_sqi((value // 64) % 64)

        if src == dst:
            # Castles in Chess960 games are encoded like this
            if src in (chess.G1, chess.G8):
                return castling_move(board, True, start)
            if src in (chess.C1, chess.C8):
                return castling_move(board, False, start)

        piece = board.piece_at(src)
        if piece is None:
            raise MoveDecodingError(f"No piece at source square: {chess.square_name(src)}")
        if piece.piece_type != chess.PAWN:
            return chess.Move(src, dst)

        # Must be a promotion
        if chess.square_rank(dst) not in (0, 7):
            raise MoveDecodingError("Double bytes used for non-promotion pawn move")
        code = value // 4096
        if code not in CODE_TO_PROMOTION:
            raise MoveDecodingError(f"Illegal promoted piece: {code}")
        return chess.Move(src, dst, promotion=CODE_TO_PROMOTION[code])


# ============================================================================
# PART 6: SIMPLE MOVE ENCODER
# ============================================================================

class SimpleOpcodeEncoder:
    """
    Encodes every move as two bytes. Rarely used for whole games, but it's
    also the encoding of quoted games inside annotations.

    Bits 0-11:  from square + to square * 64 (swapped with reverse_square_order)
    Bits 12-13: promotion piece (0=Q, 1=R, 2=B, 3=N)
    Bit 14:     last move of a line; return to the last pushed node
    Bit 15:     more moves follow from the current node; push it

    A null move is 0. Both bytes of a move share one counter value.
    """

    PUSH_FLAG = 1 << 15
    POP_FLAG = 1 << 14

    def __init__(self, key_no: int, counter_after_substitution: bool, reverse_square_order: bool,
                 key_provider: Optional[KeyProvider] = None):
        provider = key_provider or default_key_provider()
        self.cipher = ByteCipher.from_provider(provider, key_no, counter_after_substitution)
        self.reverse_square_order = reverse_square_order

    def _put(self, out: bytearray, value: int):
        out.append(self.cipher.encode(value >> 8))
        out.append(self.cipher.encode(value & 0xFF))

    def _get(self, data: bytes, pos: int) -> int:
        return self.cipher.decode(data[pos]) * 256 + self.cipher.decode(data[pos + 1])

    def encode_move(self, move: chess.Move) -> int:
        if not move:
            return 0
        src, dst = to_sqi(move.from_square), to_sqi(move.to_square)
        if self.reverse_square_order:
            src, dst = dst, src
        value = src + dst * 64
        if move.promotion:
            value += PROMOTION_TO_CODE.get(move.promotion, 0) << 12
        return value

    def encode(self, game: chess.pgn.GameNode, start: Optional[Chess960Start] = None) -> bytes:
        """Encode the move tree below a game root. start is unused; regular chess only."""
        self.cipher.reset()
        out = bytearray()

        stack = [[game, 0]]
        while stack:
            frame = stack[-1]
            node, index = frame
            children = node.variations
            if index >= len(children):
                stack.pop()
                continue
            frame[1] = index + 1

            child = children[index]
            value = self.encode_move(child.move)
            if index + 1 < len(children):
                value |= self.PUSH_FLAG
            if not child.variations:
                value |= self.POP_FLAG
            log.debug("Outputting %s with flags %d", child.move.uci(), value >> 14)

            self._put(out, value)
            self.cipher.advance()
            stack.append([child, 0])

        return bytes(out)

    def decode(self, data: bytes, game: chess.pgn.Game, check_legal_moves: bool = True,
               start: Optional[Chess960Start] = None) -> chess.pgn.Game:
        """Decode move data into an empty game root."""
        if not data:
            # An empty game has no end marker
            return game
        self.cipher.reset()

        node: Optional[chess.pgn.GameNode] = game
        board = game.board()
        # Popping the sentinel ends the game
        stack: List[Optional[Tuple[chess.pgn.GameNode, chess.Board]]] = [None]
        pos = 0

        while node is not None:
            if pos + 2 > len(data):
                raise MoveDecodingError("Move data ended abruptly", game)
            value = self._get(data, pos)
            pos += 2

            if value & self.PUSH_FLAG:
                stack.append((node, board.copy(stack=False)))

            src, dst = value % 64, (value // 64) % 64
            if self.reverse_square_order:
                src, dst = dst, src

            if src == 0 and dst == 0:
                move = chess.Move.null()
            else:
                move = chess.Move(from_sqi(src), from_sqi(dst))
                piece = board.piece_at(move.from_square)
                if (piece is not None and piece.piece_type == chess.PAWN
                        and chess.square_rank(move.to_square) in (0, 7)):
                    move = chess.Move(move.from_square, move.to_square,
                                      promotion=CODE_TO_PROMOTION[(value >> 12) % 4])

            log.debug("Decoded move %s with flags %d", move.uci(), value >> 14)
            if check_legal_moves and move and not board.is_legal(move):
                raise MoveDecodingError(f"Decoded illegal move: {move.uci()}", game)
            try:
                check_moving_piece(board, move)
            except MoveDecodingError as e:
                e.game = game
                raise

            node = node.add_variation(move)
            board.push(move)

            if value & self.POP_FLAG:
                entry = stack.pop()
                node, board = entry if entry is not None else (None, None)

            self.cipher.advance()

        return game


# ============================================================================
# PART 7: GAME QUOTATIONS
# ============================================================================

# Quoted games are encoded like encoding mode 1
QUOTATION_ENCODING_MODE = 1


class GameQuotationEncoder:
    """
    Encodes the main line of a game quoted inside another game's annotations.

    Variations and annotations are stripped and a null move is appended
    after the last move; the null move is removed again when decoding.
    """

    def __init__(self, key_provider: Optional[KeyProvider] = None):
        mode = encoding_mode(QUOTATION_ENCODING_MODE)
        self.encoder = SimpleOpcodeEncoder(mode.key_no, mode.counter_after_substitution,
                                           mode.reverse_order, key_provider)

    def encode(self, game: chess.pgn.Game) -> bytes:
        quoted = chess.pgn.Game()
        quoted.setup(game.board())
        node = quoted
        for move in game.mainline_moves():
            node = node.add_variation(move)
        node.add_variation(chess.Move.null())
        return self.encoder.encode(quoted)

    def decode(self, data: bytes, game: chess.pgn.Game) -> chess.pgn.Game:
        self.encoder.decode(data, game, check_legal_moves=True)
        last = game.end()
        if last is not game and not last.move:
            last.parent.remove_variation(last)
        return game


def encode_game_quotation(game: chess.pgn.Game,
                          key_provider: Optional[KeyProvider] = None) -> Tuple[Optional[bytes], bytes]:
    """Return (setup record or None, move data) for quoting a game."""
    board = game.board()
    setup = serialize_setup_position(board) if is_setup_position(board) else None
    return setup, GameQuotationEncoder(key_provider).encode(game)


def decode_game_quotation(move_data: bytes, setup_data: Optional[bytes] = None,
                          key_provider: Optional[KeyProvider] = None) -> chess.pgn.Game:
    """
    Parse a quoted game. Broken quotations are logged and whatever could be
    parsed is returned, since a quotation is only an annotation.
    """
    game = chess.pgn.Game()
    if setup_data is not None:
        try:
            board, _ = parse_setup_position(setup_data)
        except CodecError as e:
            log.warning("Error parsing initial position in game quotation: %s", e)
            return chess.pgn.Game()
        game.setup(board)

    try:
        GameQuotationEncoder(key_provider).decode(move_data, game)
    except MoveDecodingError as e:
        log.warning("Error parsing move in game quotation: %s", e)
    return game


# ============================================================================
# PART 8: SETUP POSITION RECORD
# ============================================================================

def is_setup_position(board: chess.Board) -> bool:
    """Whether a game starting here needs a setup position record."""
    return board.fen() != chess.STARTING_FEN


def serialize_setup_position(board: chess.Board, chess960: bool = False,
                             start: Optional[Chess960Start] = None) -> bytes:
    """
    Serialize a start position to the 28-byte setup record.

    Byte 0:     version (1)
    Byte 1:     en passant file + 1 (0 = none), +16 if black to move
    Byte 2:     castling rights (1=white long, 2=white short, 4=black long, 8=black short)
    Byte 3:     move number
    Bytes 4-27: per square in move data order, 0 if empty, else 1, color bit
                (0=white) and 3-bit piece code, MSB first, zero padded

    With chess960 the king and rook origin squares and the start position
    number follow (8 bytes).
    """
    data = bytearray(SETUP_RECORD_SIZE)
    data[0] = SETUP_RECORD_VERSION

    b = chess.square_file(board.ep_square) + 1 if board.ep_square is not None else 0
    if board.turn == chess.BLACK:
        b += 16
    data[1] = b

    castles = 0
    if board.has_queenside_castling_rights(chess.WHITE):
        castles |= 1
    if board.has_kingside_castling_rights(chess.WHITE):
        castles |= 2
    if board.has_queenside_castling_rights(chess.BLACK):
        castles |= 4
    if board.has_kingside_castling_rights(chess.BLACK):
        castles |= 8
    data[2] = castles

    data[3] = min(board.fullmove_number, 255)

    bits: List[int] = []
    for sqi in range(64):
        piece = board.piece_at(from_sqi(sqi))
        if piece is None:
            bits.append(0)
        else:
            code = PIECE_TO_SETUP_CODE[piece.piece_type]
            bits += [1, 0 if piece.color == chess.WHITE else 1, (code >> 2) & 1, (code >> 1) & 1, code & 1]

    if len(bits) > (SETUP_RECORD_SIZE - 4) * 8:
        # Only possible with more than 32 pieces
        raise ValueError("The initial position contains too many pieces")
    for i, bit in enumerate(bits):
        if bit:
            data[4 + i // 8] |= 0x80 >> (i % 8)

    if chess960:
        if start is None:
            start = start_descriptor(board)
        data += struct.pack('>6BH', *start.origin_sqis(), start.number)

    return bytes(data)


def parse_setup_position(data: bytes, chess960: bool = False,
                         game_id: int = 0) -> Tuple[chess.Board, Chess960Start]:
    """
    Parse a setup record (see serialize_setup_position).

    Returns the start position and its Chess960 start arrangement (518 unless
    the record carries Chess960 information). Unknown bits are logged.
    """
    size = SETUP_RECORD_SIZE + (CHESS960_RECORD_SIZE if chess960 else 0)
    if len(data) < size:
        raise FormatError(f"Setup position in game {game_id} ended abruptly")

    if data[0] != SETUP_RECORD_VERSION:
        log.warning("Unexpected first byte in setup position in game %d: %02X", game_id, data[0])

    b = data[1]
    ep_file = (b & 15) - 1
    turn = chess.WHITE if (b & 16) == 0 else chess.BLACK
    if b & ~31:
        log.warning("Unknown bits set in second byte in setup position in game %d: %d", game_id, b)

    castles = data[2]
    if castles & ~15:
        log.warning("Unknown bits set in third byte in setup position in game %d: %d", game_id, castles)

    # 0 and 1 both mean the first move
    move_number = data[3] or 1

    board = chess.Board(None)
    bit_pos = 32

    def read_bit() -> int:
        nonlocal bit_pos
        bit = (data[bit_pos // 8] >> (7 - bit_pos % 8)) & 1
        bit_pos += 1
        return bit

    for sqi in range(64):
        if bit_pos >= SETUP_RECORD_SIZE * 8 or not read_bit():
            continue
        if bit_pos + 4 > SETUP_RECORD_SIZE * 8:
            raise FormatError(f"Setup position in game {game_id} has too many pieces")
        color = chess.WHITE if read_bit() == 0 else chess.BLACK
        code = (read_bit() << 2) | (read_bit() << 1) | read_bit()
        if code not in SETUP_CODE_TO_PIECE:
            raise FormatError(f"Invalid piece in setup position in game {game_id}: {code}")
        board.set_piece_at(from_sqi(sqi), chess.Piece(SETUP_CODE_TO_PIECE[code], color))

    start = chess960_start(REGULAR_CHESS_SP)
    if chess960:
        # King and rook origin squares, then the start position number
        values = struct.unpack_from('>6BH', data, SETUP_RECORD_SIZE)
        number = reconcile_chess960_number(values[6], values[:6], board, game_id)
        if not 0 <= number < 960:
            raise FormatError(f"Invalid Chess960 position {number} in game {game_id}")
        start = chess960_start(number)
        board.chess960 = not start.is_regular

    board.turn = turn
    rights = 0
    for bit, color, kingside in ((1, chess.WHITE, False), (2, chess.WHITE, True),
                                 (4, chess.BLACK, False), (8, chess.BLACK, True)):
        if castles & bit:
            rights |= chess.BB_SQUARES[start.rook_origin(color, kingside)]
    board.castling_rights = rights

    if 0 <= ep_file < 8:
        board.ep_square = chess.square(ep_file, 5 if turn == chess.WHITE else 2)
    elif ep_file >= 8:
        log.warning("Invalid en passant file in setup position in game %d: %d", game_id, ep_file)

    board.fullmove_number = move_number
    return board, start


# ============================================================================
# PART 9: ENCODING MODES AND MOVE DATA FRAMING
# ============================================================================

@dataclass(frozen=True)
class EncodingMode:
    """How the moves of a game are encoded, selected by the low 6 bits of the flags byte."""
    mode: int
    compact: bool
    key_no: int
    counter_after_substitution: bool
    reverse_order: bool
    chess960: bool = False


ENCODING_MODES: Dict[int, EncodingMode] = {m.mode: m for m in [
    EncodingMode(0x00, True, 0, True, False),
    EncodingMode(0x01, False, 2, True, False),
    EncodingMode(0x02, True, 4, True, True),
    EncodingMode(0x03, False, 6, True, True),
    EncodingMode(0x04, True, 10, False, False),
    EncodingMode(0x05, False, 12, False, False),
    EncodingMode(0x06, True, 14, False, True),
    EncodingMode(0x07, False, 16, False, True),
    EncodingMode(0x0A, True, 22, False, False, chess960=True),
    EncodingMode(0x0B, True, 24, False, True, chess960=True),
]}

UNSUPPORTED_VARIANTS = {
    0x08: 'giveaway', 0x09: 'giveaway',
    0x0C: 'out chatrang', 0x0D: 'out chatrang',
    0x0E: 'twins', 0x0F: 'twins',
    0x10: 'makruk', 0x11: 'makruk',
    0x12: 'pawns', 0x13: 'pawns',
}

ILLEGAL_POSITIONS_MODE = 0x3F


def encoding_mode(mode: int) -> EncodingMode:
    """Look up an encoding mode; unsupported modes raise UnsupportedEncodingError."""
    if mode in ENCODING_MODES:
        return ENCODING_MODES[mode]
    if mode in UNSUPPORTED_VARIANTS:
        raise UnsupportedEncodingError(f"Chess variant '{UNSUPPORTED_VARIANTS[mode]}' not supported")
    if mode == ILLEGAL_POSITIONS_MODE:
        raise UnsupportedEncodingError("Illegal positions not supported")
    raise UnsupportedEncodingError(f"Unknown encoding mode {mode} not supported")


def create_encoder(mode: int, key_provider: Optional[KeyProvider] = None,
                   integrity_checks: bool = False):
    """A fresh move encoder for an encoding mode."""
    m = encoding_mode(mode)
    if m.compact:
        return CompactOpcodeEncoder(m.key_no, m.counter_after_substitution, m.reverse_order,
                                    key_provider, integrity_checks)
    return SimpleOpcodeEncoder(m.key_no, m.counter_after_substitution, m.reverse_order, key_provider)


class MoveTreeCodec:
    """
    Serializes the moves of a game, setup position included.

    Byte 0:    flags; bits 0-5 encoding mode, bit 6 setup position present
    Bytes 1-3: total size including this header (big endian)
    Then the setup record, if any, and the encoded moves.

    A new encoder is created for every call, so one codec can be shared.
    """

    def __init__(self, key_provider: Optional[KeyProvider] = None, log_detailed_errors: bool = False,
                 integrity_checks: Optional[bool] = None):
        self.key_provider = key_provider or default_key_provider()
        self.log_detailed_errors = log_detailed_errors
        if integrity_checks is None:
            integrity_checks = bool(os.getenv('CBG_INTEGRITY_CHECKS'))
        self.integrity_checks = integrity_checks

    def serialize(self, game: chess.pgn.Game, mode: Optional[int] = None) -> bytes:
        board = game.board()
        start = start_descriptor(board)
        if mode is None:
            mode = 0x0A if not start.is_regular else 0x00
        m = encoding_mode(mode)
        if not start.is_regular and not m.chess960:
            raise ValueError("Chess960 requires encoding mode 10 or 11")

        setup = is_setup_position(board)
        data = bytearray(HEADER_SIZE)
        data[0] = mode | (FLAG_SETUP_POSITION if setup else 0)

        if setup:
            data += serialize_setup_position(board, m.chess960, start)

        encoder = create_encoder(mode, self.key_provider, self.integrity_checks)
        data += encoder.encode(game, start)

        if len(data) > MAX_BLOB_SIZE:
            raise ValueError(f"Move data too large: {len(data)} bytes")
        struct.pack_into('>I', data, 0, (data[0] << 24) | len(data))
        return bytes(data)

    def deserialize(self, data: bytes, check_legal_moves: bool = True, game_id: int = 0) -> chess.pgn.Game:
        """
        Parse serialized moves.

        Raises FormatError for a broken header or setup record and
        MoveDecodingError if a move couldn't be decoded, with the moves parsed
        so far in the exception's game. game_id is only used in log messages.
        """
        if len(data) < HEADER_SIZE:
            raise FormatError(f"Moves data header ended abruptly in game {game_id}")
        header = struct.unpack_from('>I', data, 0)[0]
        flags, size = header >> 24, header & 0xFFFFFF
        if size < HEADER_SIZE or size > len(data):
            raise FormatError(f"Invalid move data size {size} in game {game_id} ({len(data)} bytes available)")
        # Never read beyond the declared size
        move_data = bytes(data[HEADER_SIZE:size])

        if flags & FLAG_UNKNOWN:
            log.warning("Bit 7 set in first byte in move data in game %d", game_id)
        m = encoding_mode(flags & MODE_MASK)

        game = chess.pgn.Game()
        start = chess960_start(REGULAR_CHESS_SP)
        if flags & FLAG_SETUP_POSITION:
            record_size = SETUP_RECORD_SIZE + (CHESS960_RECORD_SIZE if m.chess960 else 0)
            board, start = parse_setup_position(move_data[:record_size], m.chess960, game_id)
            game.setup(board)
            move_data = move_data[record_size:]

        if m.mode not in (0x00, 0x0A):
            log.warning("Move data in game %d has an unusual encoding: %02X", game_id, m.mode)
        log.debug("Parsing move data for game %d at %s with %d bytes left",
                  game_id, game.board().fen(), len(move_data))

        encoder = create_encoder(m.mode, self.key_provider, self.integrity_checks)
        try:
            encoder.decode(move_data, game, check_legal_moves, start)
        except MoveDecodingError as e:
            message = str(e)
            if self.log_detailed_errors:
                exporter = chess.pgn.StringExporter(headers=False, comments=False)
                message += ". Moves parsed so far: " + game.accept(exporter)
            raise MoveDecodingError(message, game) from e

        return game


def serialize_moves(game: chess.pgn.Game, mode: Optional[int] = None,
                    key_provider: Optional[KeyProvider] = None) -> bytes:
    return MoveTreeCodec(key_provider).serialize(game, mode)


def deserialize_moves(data: bytes, check_legal_moves: bool = True, game_id: int = 0,
                      key_provider: Optional[KeyProvider] = None) -> chess.pgn.Game:
    return MoveTreeCodec(key_provider).deserialize(data, check_legal_moves, game_id)


def _position_key(board: chess.Board) -> Tuple:
    # Everything a setup record can hold
    return (board.board_fen(), board.turn, board.clean_castling_rights(),
            board.ep_square, board.fullmove_number)


def _move_key(board: chess.Board, move: chess.Move) -> Tuple:
    # Castling compares by side, since e1g1 and e1h1 are the same move in different notations
    if move and board.is_castling(move):
        return ("O-O" if board.is_kingside_castling(move) else "O-O-O",)
    return (move,)


def _board_after(board: chess.Board, move: chess.Move) -> chess.Board:
    board = board.copy(stack=False)
    board.push(move)
    return board


def move_trees_equal(a: chess.pgn.GameNode, b: chess.pgn.GameNode) -> bool:
    """Same start position (as far as move data stores it) and same moves in the same tree shape."""
    if _position_key(a.board()) != _position_key(b.board()):
        return False
    pending = [(a, a.board(), b, b.board())]
    while pending:
        x, x_board, y, y_board = pending.pop()
        if ([_move_key(x_board, child.move) for child in x.variations]
                != [_move_key(y_board, child.move) for child in y.variations]):
            return False
        for x_child, y_child in zip(x.variations, y.variations):
            pending.append((x_child, _board_after(x_board, x_child.move),
                            y_child, _board_after(y_board, y_child.move)))
    return True
