"""Shared pytest fixtures used across the test suite."""

import random
from typing import Callable, List, Optional

import chess
import chess.pgn
import pytest

import cbgmoves


# Start position exercising en passant, every promotion piece and both castles
PROMOTION_FEN = "r3k2r/1P6/8/3pP3/8/8/8/R3K2R w KQkq d6 0 1"


def add_line(node: chess.pgn.GameNode, sans: List[str]) -> chess.pgn.GameNode:
    """Append moves given in SAN below node; returns the last node."""
    board = node.board()
    for san in sans:
        move = board.parse_san(san)
        node = node.add_variation(move)
        board.push(move)
    return node


def make_game(sans: List[str], fen: Optional[str] = None, chess960: bool = False) -> chess.pgn.Game:
    game = chess.pgn.Game()
    if fen is not None:
        game.setup(chess.Board(fen, chess960=chess960))
    add_line(game, sans)
    return game


def random_game(seed: int, plies: int = 200, board: Optional[chess.Board] = None) -> chess.pgn.Game:
    """A game of random legal moves."""
    rng = random.Random(seed)
    game = chess.pgn.Game()
    if board is not None:
        game.setup(board)
    node = game
    board = game.board()
    for _ in range(plies):
        moves = list(board.legal_moves)
        if not moves:
            break
        move = rng.choice(moves)
        node = node.add_variation(move)
        board.push(move)
    return game


def nested_game() -> chess.pgn.Game:
    """Ruy Lopez main line with variations nested three levels deep."""
    game = make_game(["e4", "e5", "Nf3", "Nc6", "Bb5", "a6", "Ba4", "Nf6", "O-O"])
    add_line(game.variations[0].variations[0], ["f4", "exf4"])
    d4 = add_line(game, ["d4", "d5"]).parent
    nf6 = add_line(d4, ["Nf6", "c4", "e6"]).parent.parent
    add_line(nf6, ["Nf3", "g6"])
    add_line(game, ["c4"])
    return game


def promotion_game() -> chess.pgn.Game:
    """En passant main line; promotions to every piece and castling in the variations."""
    game = make_game(["exd6", "O-O", "O-O-O"], fen=PROMOTION_FEN)
    add_line(game, ["O-O", "Rb8"])
    queen = add_line(game, ["b8=Q+"])
    add_line(queen, ["Rxb8"])
    kd7 = add_line(queen, ["Kd7"])
    add_line(kd7, ["Qxa8"])
    add_line(kd7, ["O-O"])
    long_castle = add_line(kd7, ["O-O-O", "Raxb8"]).parent
    add_line(long_castle, ["Rhe8"])
    add_line(game, ["bxa8=R+", "Kd7"])
    add_line(game, ["b8=B", "O-O"])
    add_line(game, ["b8=N", "Rxb8"])
    add_line(game, ["bxa8=N", "Kd7"])
    return game


@pytest.fixture(scope="session")
def key_provider() -> cbgmoves.KeyProvider:
    return cbgmoves.GeneratedKeyProvider(seed=7)


@pytest.fixture
def codec(key_provider: cbgmoves.KeyProvider) -> cbgmoves.MoveTreeCodec:
    return cbgmoves.MoveTreeCodec(key_provider, integrity_checks=True)


@pytest.fixture
def key_file(tmp_path, key_provider: cbgmoves.KeyProvider):
    """Binary key file holding the generated tables 0..25."""
    path = tmp_path / "keys.bin"
    path.write_bytes(b"".join(bytes(key_provider.move_key(key_no)) for key_no in range(26)))
    return path


@pytest.fixture
def cipher_stream(key_provider: cbgmoves.KeyProvider) -> Callable[..., bytes]:
    """
    Encipher raw compact opcodes like the mode 0 encoder does.

    Each item is an opcode or a tuple of bytes making up one move; the
    counter advances after every item except variation markers.
    """

    def build(items, key_no: int = 0, counter_after_substitution: bool = True) -> bytes:
        cipher = cbgmoves.ByteCipher.from_provider(key_provider, key_no, counter_after_substitution)
        out = bytearray()
        for item in items:
            values = item if isinstance(item, tuple) else (item,)
            out += bytes(cipher.encode(value) for value in values)
            if values[0] not in (cbgmoves.OPCODE_START_VARIANT, cbgmoves.OPCODE_END_VARIANT,
                                 cbgmoves.OPCODE_IGNORE) and not (
                    cbgmoves.OPCODE_IGNORE < values[0] < cbgmoves.OPCODE_START_VARIANT):
                cipher.advance()
        return bytes(out)

    return build
