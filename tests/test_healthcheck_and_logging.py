from __future__ import annotations

import importlib.util
import io
import json
import logging
import urllib.error
from pathlib import Path

import pytest

from detector_link.core.logging_config import CHATTY_LOGGERS, setup_logging

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "healthcheck.py"


@pytest.fixture
def healthcheck():
    spec = importlib.util.spec_from_file_location("healthcheck", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class FakeResponse:
    def __init__(self, status: int):
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


def test_healthcheck_ok(healthcheck, monkeypatch) -> None:
    monkeypatch.setattr(healthcheck.urllib.request, "urlopen", lambda url, timeout: FakeResponse(200))
    assert healthcheck.check("http://test/health") == 0


def test_healthcheck_reports_degraded_link(healthcheck, monkeypatch, capsys) -> None:
    body = json.dumps(
        {"status": "degraded", "state": "error", "connected": False, "last_error": "Heartbeat timeout after 1.000s"}
    ).encode()

    def fake_urlopen(url, timeout):
        raise urllib.error.HTTPError(url, 503, "Service Unavailable", {}, io.BytesIO(body))

    monkeypatch.setattr(healthcheck.urllib.request, "urlopen", fake_urlopen)

    assert healthcheck.check("http://test/health") == 1
    err = capsys.readouterr().err
    assert "degraded" in err
    assert "detector link error: Heartbeat timeout" in err


def test_healthcheck_service_unreachable(healthcheck, monkeypatch, capsys) -> None:
    def fake_urlopen(url, timeout):
        raise urllib.error.URLError(ConnectionRefusedError(111, "Connection refused"))

    monkeypatch.setattr(healthcheck.urllib.request, "urlopen", fake_urlopen)

    assert healthcheck.check("http://test/health") == 1
    assert "unreachable" in capsys.readouterr().err


def test_wire_loggers_quiet_unless_requested() -> None:
    setup_logging("DEBUG", wire_debug=False)
    assert logging.getLogger("detector_link").level == logging.DEBUG
    for name in CHATTY_LOGGERS:
        assert logging.getLogger(name).level == logging.INFO

    setup_logging("DEBUG", wire_debug=True)
    for name in CHATTY_LOGGERS:
        assert logging.getLogger(name).level == logging.DEBUG

    setup_logging("INFO", wire_debug=False)
