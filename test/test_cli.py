"""CLI entry point tests: exit codes, host streams and log file."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Any

import processor
import pytest
from isa import encode_image


@pytest.fixture(autouse=True)
def _reset_logging() -> Any:
    yield
    root = logging.getLogger()
    for h in list(root.handlers):
        h.close()
        root.removeHandler(h)


def _write(tmp_path: Path, words: list[int]) -> str:
    p = tmp_path / "challenge.bin"
    p.write_bytes(encode_image(words))
    return str(p)


def test_clean_halt(tmp_path: Path, capsys: Any) -> None:
    prog = _write(tmp_path, [19, 72, 19, 105, 19, 10, 0])
    log = tmp_path / "vm.log"
    assert processor.main([prog, "--logfile", str(log)]) == 0
    assert capsys.readouterr().out == "Hi\n"
    assert log.exists()


def test_echo_from_stdin(tmp_path: Path, capsys: Any, monkeypatch: Any) -> None:
    prog = _write(tmp_path, [20, 32768, 19, 32768, 0])
    monkeypatch.setattr("sys.stdin", io.StringIO("x\n"))
    assert processor.main([prog, "--logfile", str(tmp_path / "vm.log")]) == 0
    assert capsys.readouterr().out == "x"


def test_input_script(tmp_path: Path, capsys: Any) -> None:
    prog = _write(tmp_path, [20, 32768, 19, 32768, 20, 32768, 19, 32768, 0])
    script = tmp_path / "moves.txt"
    script.write_text("# replayed moves\n\nq\n", encoding="utf-8")
    assert processor.main([prog, "--input", str(script), "--logfile", str(tmp_path / "vm.log")]) == 0
    assert capsys.readouterr().out == "q\n"


def test_fatal_error_exit_code(tmp_path: Path, capsys: Any) -> None:
    prog = _write(tmp_path, [19, 65, 3, 32768])
    log = tmp_path / "vm.log"
    assert processor.main([prog, "--logfile", str(log)]) == 1
    captured = capsys.readouterr()
    assert captured.out == "A"
    assert "stack underflow" in captured.err
    assert "ip=2" in captured.err
    logging.getLogger().handlers[0].flush()
    assert "stack underflow" in log.read_text(encoding="utf-8")


def test_debug_log_has_steps(tmp_path: Path, capsys: Any) -> None:
    prog = _write(tmp_path, [21, 0])
    log = tmp_path / "vm.log"
    assert processor.main([prog, "--debug", "--logfile", str(log)]) == 0
    logging.getLogger().handlers[0].flush()
    text = log.read_text(encoding="utf-8")
    assert "INSTR: noop" in text
    assert "HALT encountered" in text


def test_program_from_config(tmp_path: Path, capsys: Any) -> None:
    prog = _write(tmp_path, [19, 90, 0])
    cfg = tmp_path / "vm.yaml"
    cfg.write_text(f"program: {prog}\nlogfile: {tmp_path / 'vm.log'}\n", encoding="utf-8")
    assert processor.main(["--config", str(cfg)]) == 0
    assert capsys.readouterr().out == "Z"


def test_missing_program(tmp_path: Path, capsys: Any) -> None:
    assert processor.main([str(tmp_path / "none.bin"), "--logfile", str(tmp_path / "vm.log")]) == 2
    assert "not found" in capsys.readouterr().err


def test_bad_config(tmp_path: Path, capsys: Any) -> None:
    cfg = tmp_path / "vm.yaml"
    cfg.write_text("mem_cells: -1\n", encoding="utf-8")
    assert processor.main(["--config", str(cfg)]) == 2
    assert "Bad config" in capsys.readouterr().err


def test_program_path_is_directory(tmp_path: Path, capsys: Any) -> None:
    assert processor.main([str(tmp_path), "--logfile", str(tmp_path / "vm.log")]) == 2
    assert "not found" in capsys.readouterr().err
