# test/test_sockline_smoketest.py

from __future__ import annotations

from sockline.tools import sockline_smoketest as smoke


def test_parser_defaults():
    args = smoke.build_parser().parse_args(["ws://localhost:8080/socket", "cpu.load"])
    assert args.start == "-5m"
    assert args.until == "now"
    assert args.granularity == "15s"
    assert args.get is False
    assert args.count == 1


def test_parser_accepts_negative_offset_with_equals():
    args = smoke.build_parser().parse_args(["ws://h/", "cpu.load", "--from=-1h", "--get"])
    assert args.start == "-1h"
    assert args.get is True


def test_time_value_parsing():
    assert smoke._time_value("1700000000") == 1700000000
    assert smoke._time_value("1700000000.5") == 1700000000.5
    assert smoke._time_value("-5m") == "-5m"
    assert smoke._time_value("now") == "now"


def test_invalid_address_exits_with_error(capsys):
    assert smoke.main(["http://localhost/", "cpu.load"]) == 2
    assert "invalid_address" in capsys.readouterr().out


def test_invalid_selector_exits_with_error(capsys):
    assert smoke.main(["ws://localhost/", "cpu.load", "--granularity", "fast"]) == 2
    assert "invalid_selector" in capsys.readouterr().out
