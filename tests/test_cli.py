"""Smoke tests for the cbgtool command line."""

import pytest

import cbgmoves
import cbgtool
from conftest import nested_game, promotion_game


@pytest.fixture
def pgn_file(tmp_path):
    path = tmp_path / "games.pgn"
    path.write_text(f"{nested_game()}\n\n{promotion_game()}\n")
    return path


def encode(key_file, pgn_file, out, *extra) -> int:
    return cbgtool.main(["--keys", str(key_file), "encode", str(pgn_file), str(out), "--quiet", *extra])


class TestCommands:
    def test_encode_and_inspect(self, key_file, pgn_file, tmp_path, capsys) -> None:
        out = tmp_path / "games.bin"
        assert encode(key_file, pgn_file, out) == 0
        blobs = list(cbgtool.iter_blobs(out.read_bytes()))
        assert len(blobs) == 2

        assert cbgtool.main(["--keys", str(key_file), "inspect", str(out)]) == 0
        output = capsys.readouterr().out
        assert "Total: 2 blobs" in output
        assert "yes" in output

    def test_decode(self, key_file, pgn_file, tmp_path, capsys) -> None:
        out = tmp_path / "games.bin"
        encode(key_file, pgn_file, out, "--mode", "1")
        assert cbgtool.main(["--keys", str(key_file), "decode", str(out)]) == 0
        output = capsys.readouterr().out
        assert "1. e4" in output
        assert "b8=Q+" in output

    def test_verify(self, key_file, pgn_file) -> None:
        assert cbgtool.main(["--keys", str(key_file), "verify", str(pgn_file), "--quiet"]) == 0

    def test_verify_reports_mismatches(self, key_file, pgn_file, monkeypatch, capsys) -> None:
        monkeypatch.setattr(cbgmoves, "move_trees_equal", lambda a, b: False)
        assert cbgtool.main(["--keys", str(key_file), "verify", str(pgn_file)]) == 5
        assert "Errors found: 2" in capsys.readouterr().out

    def test_missing_file(self, key_file, tmp_path) -> None:
        with pytest.raises(SystemExit) as excinfo:
            cbgtool.main(["--keys", str(key_file), "decode", str(tmp_path / "missing.bin")])
        assert excinfo.value.code == 1

    def test_unsupported_mode(self, key_file, pgn_file, tmp_path) -> None:
        with pytest.raises(SystemExit) as excinfo:
            encode(key_file, pgn_file, tmp_path / "out.bin", "--mode", "8")
        assert excinfo.value.code == 2

    def test_corrupt_blob_file(self, key_file, tmp_path, capsys) -> None:
        path = tmp_path / "bad.bin"
        path.write_bytes(b"\x00\x00\x00\x40")
        assert cbgtool.main(["--keys", str(key_file), "decode", str(path)]) == 1
        assert "fatal:" in capsys.readouterr().err

    def test_no_command(self) -> None:
        assert cbgtool.main([]) == 1


class TestHelpers:
    def test_iter_blobs_rejects_truncated_header(self) -> None:
        with pytest.raises(cbgmoves.FormatError):
            list(cbgtool.iter_blobs(b"\x00\x00"))

    def test_count_plies(self) -> None:
        assert cbgtool.count_plies(nested_game()) == 19

    @pytest.mark.parametrize("seconds,text", [(5, "5.0s"), (125, "2m 5s"), (7300, "121m 40s")])
    def test_format_duration(self, seconds: float, text: str) -> None:
        assert cbgtool.format_duration(seconds) == text

    @pytest.mark.parametrize("size,text", [(10, "10 B"), (2048, "2.0 KB"), (3 * 1024 * 1024, "3.0 MB")])
    def test_format_size(self, size: int, text: str) -> None:
        assert cbgtool.format_size(size) == text
