"""Tests for the piece location tracker."""

import chess
import pytest

import cbgmoves
from conftest import random_game


def tracker_for(fen: str, reverse: bool = False) -> cbgmoves.PieceLocationTracker:
    return cbgmoves.PieceLocationTracker.from_position(chess.Board(fen), reverse)


def after(fen: str, uci: str) -> cbgmoves.PieceLocationTracker:
    board = chess.Board(fen)
    tracker = cbgmoves.PieceLocationTracker.from_position(board)
    return tracker.apply_move(board, chess.Move.from_uci(uci))


class TestFromPosition:
    def test_pieces_numbered_in_column_order(self) -> None:
        tracker = tracker_for(chess.STARTING_FEN)
        assert tracker.slot_square(chess.PAWN, chess.WHITE, 4) == chess.E2
        assert tracker.slot_square(chess.KNIGHT, chess.WHITE, 0) == chess.B1
        assert tracker.slot_square(chess.KNIGHT, chess.WHITE, 1) == chess.G1
        assert tracker.slot_square(chess.ROOK, chess.BLACK, 1) == chess.H8
        assert tracker.slot_square(chess.QUEEN, chess.WHITE, 1) is None

    def test_reverse_scan_order(self) -> None:
        tracker = tracker_for(chess.STARTING_FEN, reverse=True)
        assert tracker.slot_square(chess.KNIGHT, chess.WHITE, 0) == chess.G1
        assert tracker.slot_square(chess.PAWN, chess.BLACK, 0) == chess.H7

    def test_pieces_beyond_capacity_are_untracked(self) -> None:
        tracker = tracker_for("4k3/8/8/8/8/8/8/NNNNK3 w - - 0 1")
        assert tracker.instance_at(chess.KNIGHT, chess.WHITE, chess.C1) == 2
        assert tracker.instance_at(chess.KNIGHT, chess.WHITE, chess.D1) is None
        tracker.validate(chess.Board("4k3/8/8/8/8/8/8/NNNNK3 w - - 0 1"))


class TestApplyMove:
    def test_returns_new_tracker(self) -> None:
        board = chess.Board()
        tracker = cbgmoves.PieceLocationTracker.from_position(board)
        moved = tracker.apply_move(board, chess.Move.from_uci("e2e4"))
        assert moved.slot_square(chess.PAWN, chess.WHITE, 4) == chess.E4
        assert tracker.slot_square(chess.PAWN, chess.WHITE, 4) == chess.E2

    def test_null_move_keeps_tracker(self) -> None:
        board = chess.Board()
        tracker = cbgmoves.PieceLocationTracker.from_position(board)
        assert tracker.apply_move(board, chess.Move.null()) is tracker

    def test_captured_piece_compacts_slots(self) -> None:
        tracker = after("q3k3/8/8/8/8/8/8/R3K2R b - - 0 1", "a8a1")
        assert tracker.slot_square(chess.ROOK, chess.WHITE, 0) == chess.H1
        assert tracker.slot_square(chess.ROOK, chess.WHITE, 1) is None
        assert tracker.slot_square(chess.QUEEN, chess.BLACK, 0) == chess.A1

    def test_captured_pawn_leaves_hole(self) -> None:
        tracker = after("4k3/8/8/3p3p/4P3/8/8/4K3 w - - 0 1", "e4d5")
        assert tracker.slot_square(chess.PAWN, chess.BLACK, 0) is None
        assert tracker.slot_square(chess.PAWN, chess.BLACK, 1) == chess.H5

    def test_en_passant_capture(self) -> None:
        tracker = after("4k3/8/8/3pP3/8/8/8/4K3 w - d6 0 1", "e5d6")
        assert tracker.slot_square(chess.PAWN, chess.WHITE, 0) == chess.D6
        assert tracker.slot_square(chess.PAWN, chess.BLACK, 0) is None

    def test_promotion_takes_first_free_slot(self) -> None:
        tracker = after("4k3/P7/8/8/8/8/8/3QK3 w - - 0 1", "a7a8q")
        assert tracker.slot_square(chess.QUEEN, chess.WHITE, 0) == chess.D1
        assert tracker.slot_square(chess.QUEEN, chess.WHITE, 1) == chess.A8
        assert tracker.slot_square(chess.PAWN, chess.WHITE, 0) is None

    def test_promotion_beyond_capacity_is_untracked(self) -> None:
        tracker = after("4k3/P7/8/8/8/8/8/NNN1K3 w - - 0 1", "a7a8n")
        assert tracker.instance_at(chess.KNIGHT, chess.WHITE, chess.A8) is None

    @pytest.mark.parametrize("uci,king,rook_slot,rook", [
        ("e1g1", chess.G1, 1, chess.F1),
        ("e1c1", chess.C1, 0, chess.D1),
    ])
    def test_castling_moves_king_and_rook(self, uci: str, king: int, rook_slot: int, rook: int) -> None:
        tracker = after("r3k2r/8/8/8/8/8/8/R3K2R w KQkq - 0 1", uci)
        assert tracker.slot_square(chess.KING, chess.WHITE, 0) == king
        assert tracker.slot_square(chess.ROOK, chess.WHITE, rook_slot) == rook

    def test_chess960_castling_uses_start_rooks(self) -> None:
        board = chess.Board("1r2k1r1/pppppppp/8/8/8/8/PPPPPPPP/1R2K1R1 w GBgb - 0 1", chess960=True)
        tracker = cbgmoves.PieceLocationTracker.from_position(board)
        tracker = tracker.apply_move(board, board.parse_san("O-O-O"))
        assert tracker.slot_square(chess.KING, chess.WHITE, 0) == chess.C1
        assert tracker.slot_square(chess.ROOK, chess.WHITE, 0) == chess.D1
        assert tracker.slot_square(chess.ROOK, chess.WHITE, 1) == chess.G1


class TestValidate:
    @pytest.mark.parametrize("seed", range(5))
    def test_consistent_over_random_games(self, seed: int) -> None:
        game = random_game(seed, plies=200)
        board = game.board()
        tracker = cbgmoves.PieceLocationTracker.from_position(board)
        for move in game.mainline_moves():
            tracker = tracker.apply_move(board, move)
            board.push(move)
            tracker.validate(board)

    def test_detects_wrong_square(self) -> None:
        board = chess.Board()
        tracker = cbgmoves.PieceLocationTracker.from_position(board)
        squares = list(tracker.squares)
        squares[squares.index(chess.E2)] = chess.E4
        with pytest.raises(cbgmoves.TrackerIntegrityError):
            cbgmoves.PieceLocationTracker(tuple(squares), tracker.start).validate(board)

    def test_detects_missing_piece(self) -> None:
        board = chess.Board()
        tracker = cbgmoves.PieceLocationTracker.from_position(board)
        board.set_piece_at(chess.E4, chess.Piece(chess.PAWN, chess.WHITE))
        with pytest.raises(cbgmoves.TrackerIntegrityError):
            tracker.validate(board)
