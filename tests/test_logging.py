import re
import tarfile
from pathlib import Path

import bittensor as bt
import pytest

from avalanched.errors import FatalConfigurationError
from avalanched.utils.logging import configure_logging, fatal_line

ROOT = Path(__file__).resolve().parents[1]


def test_bt_logging_exposes_the_calls_the_agent_makes():
    calls = ("trace", "debug", "info", "success", "warning", "error")
    switches = ("set_trace", "set_debug", "set_info", "set_warning")
    for name in calls + switches:
        assert callable(getattr(bt.logging, name)), name


@pytest.mark.parametrize(
    "level,switch",
    [("trace", "set_trace"), ("DEBUG", "set_debug"), ("info", "set_info"), (" warning ", "set_warning"), ("", "set_info")],
)
def test_configure_logging_flips_one_switch(monkeypatch, level, switch):
    calls = []
    for name in ("set_trace", "set_debug", "set_info", "set_warning"):
        monkeypatch.setattr(bt.logging, name, lambda on, _n=name: calls.append((_n, on)))
    configure_logging(level)
    assert calls == [(switch, True)]


def test_configure_logging_rejects_unknown_level():
    with pytest.raises(FatalConfigurationError) as ei:
        configure_logging("verbose")
    assert ei.value.exit_code == 2


def test_fatal_line_is_single_line():
    line = fatal_line(node_id=None, stage="keys", category="corruption", cause="bad\nenvelope  blob")
    assert line == "FATAL node_id=- stage=keys category=corruption cause=bad envelope blob"


def test_bittensor_range_stops_before_logging_removal():
    reqs = (ROOT / "requirements.txt").read_text(encoding="utf-8").splitlines()
    pin = next(r for r in reqs if r.startswith("bittensor"))
    assert "<11" in pin


def test_interpreter_floor_has_tar_extraction_filters():
    assert hasattr(tarfile, "data_filter")
    setup_py = (ROOT / "setup.py").read_text(encoding="utf-8")
    floor = re.search(r'python_requires="([^"]+)"', setup_py).group(1)
    assert ">=3.10.12" in floor
    for patch in range(4):
        assert f"!=3.11.{patch}" in floor
