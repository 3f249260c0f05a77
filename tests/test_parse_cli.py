import io
import json
import logging
import sys

import pytest

import parse_cli
from ofx_statement_parser import EncodingError


def test_file_to_stdout(checking_ofx_path, capsys):
    assert parse_cli.main([str(checking_ofx_path)]) == parse_cli.EXIT_OK
    out = capsys.readouterr().out
    payload = json.loads(out)
    assert payload["account_number"] == "1234567890"
    assert [tx["fit_id"] for tx in payload["transactions"]] == ["TX-0001", "TX-0002"]
    # compact by default: one line of JSON
    assert out.count("\n") == 1


def test_reads_stdin_when_no_path(checking_ofx_bytes, capsys, monkeypatch):
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(checking_ofx_bytes)))
    assert parse_cli.main([]) == parse_cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["ledger_balance"] == "1234.56"


def test_output_file_is_pretty(checking_ofx_path, tmp_path):
    target = tmp_path / "out.json"
    assert parse_cli.main([str(checking_ofx_path), "-o", str(target)]) == parse_cli.EXIT_OK
    text = target.read_text(encoding="utf-8")
    assert text.startswith("{\n  ")
    assert json.loads(text)["currency"] == "USD"


def test_exact_amounts_flag(tmp_path, capsys):
    src = tmp_path / "s.ofx"
    src.write_bytes(b"<STMTTRN><FITID>1<TRNAMT>0.29</STMTTRN>")
    parse_cli.main([str(src)])
    assert json.loads(capsys.readouterr().out)["transactions"][0]["amount"] == "0.28"
    parse_cli.main([str(src), "--exact-amounts"])
    assert json.loads(capsys.readouterr().out)["transactions"][0]["amount"] == "0.29"


def test_parse_failure_exit_code(tmp_path, capsys):
    src = tmp_path / "bad.ofx"
    src.write_bytes(b"<STMTTRN><FITID>1<DTPOSTED>2024</STMTTRN>")
    assert parse_cli.main([str(src)]) == parse_cli.EXIT_PARSE_FAILED
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "failed to parse input" in captured.err


def test_encoding_failure_exit_code(checking_ofx_path, capsys, monkeypatch):
    def boom(statement, indent=None):
        raise EncodingError("nope")

    monkeypatch.setattr(parse_cli, "render_json", boom)
    assert parse_cli.main([str(checking_ofx_path)]) == parse_cli.EXIT_ENCODE_FAILED
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "nope" in captured.err


def test_missing_file_exit_code(tmp_path, capsys):
    assert parse_cli.main([str(tmp_path / "missing.ofx")]) == parse_cli.EXIT_INPUT_UNREADABLE
    assert "cannot read input" in capsys.readouterr().err


def test_huge_exact_amount_exits_ok(tmp_path, capsys):
    src = tmp_path / "big.ofx"
    src.write_bytes(b"<STMTTRN><FITID>1<TRNAMT>1e5000</STMTTRN>")
    assert parse_cli.main([str(src), "--exact-amounts"]) == parse_cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["transactions"][0]["amount"] == "0.00"


def test_unwritable_output_exit_code(checking_ofx_path, tmp_path, capsys):
    target = tmp_path / "missing" / "out.json"
    assert parse_cli.main([str(checking_ofx_path), "-o", str(target)]) == parse_cli.EXIT_OUTPUT_UNWRITABLE
    assert "cannot write output" in capsys.readouterr().err
    assert not target.exists()


def test_unknown_encoding_is_usage_error(checking_ofx_path):
    with pytest.raises(SystemExit) as excinfo:
        parse_cli.main([str(checking_ofx_path), "--encoding", "no-such-codec"])
    assert excinfo.value.code == 2


@pytest.mark.parametrize(
    "flag, env, expected",
    [
        ("debug", None, logging.DEBUG),
        (None, "info", logging.INFO),
        (None, None, logging.WARNING),
        ("10", None, 10),
        ("bogus", None, logging.WARNING),
    ],
)
def test_resolve_log_level(flag, env, expected, monkeypatch):
    if env is None:
        monkeypatch.delenv(parse_cli.LOG_LEVEL_ENV, raising=False)
    else:
        monkeypatch.setenv(parse_cli.LOG_LEVEL_ENV, env)
    assert parse_cli.resolve_log_level(flag) == expected
