from __future__ import annotations

import dataclasses
import json

import pytest

from conftest import TEST_API_KEY
from weather_gateway import cli


@pytest.fixture()
def keyed_settings(monkeypatch: pytest.MonkeyPatch):
    s = dataclasses.replace(cli.settings, owm_api_key=TEST_API_KEY, default_lang="en")
    monkeypatch.setattr(cli, "settings", s)
    return s


def test_build_url_prints_masked_url(keyed_settings, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["build-url", "--kind", "forecast", "--lat", "51.5", "--lon", "-0.12", "--lang", "FR"])

    assert exc_info.value.code == 0
    out = capsys.readouterr().out.strip()
    assert out.endswith("/forecast?lat=51.5&lon=-0.12&units=metric&lang=fr&appid=[API_KEY]")
    assert TEST_API_KEY not in out


def test_build_url_geocoding(keyed_settings, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["build-url", "--kind", "geocoding", "--q", "New York", "--limit", "2"])

    assert exc_info.value.code == 0
    assert "/direct?q=New%20York&limit=2" in capsys.readouterr().out


def test_build_url_rejects_missing_coordinates(keyed_settings, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["build-url", "--kind", "current", "--lat", "10"])

    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert out.startswith("ERROR: Missing required parameters")
    assert "lon" in out


def test_check_key_without_key_exits_2(monkeypatch: pytest.MonkeyPatch, capsys):
    monkeypatch.setattr(cli, "settings", dataclasses.replace(cli.settings, owm_api_key=None))

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["check-key"])

    assert exc_info.value.code == 2
    report = json.loads(capsys.readouterr().out)
    assert report["success"] is False
    assert report["api_key"]["configured"] is False
    assert report["error"]["error"] == "API key not configured"
