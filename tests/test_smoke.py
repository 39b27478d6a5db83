from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from hybridrag.api.app import create_app
from hybridrag.config import Settings
from hybridrag.smoke import SmokeFailure, main, run_smoke


def test_smoke_check_passes_against_app(tmp_path: Path):
    settings = Settings(
        environment="test",
        web_search_enabled=False,
        embedding_api_key=None,
        chroma_persist_dir=tmp_path / "chroma",
    )
    with TestClient(create_app(settings=settings)) as client:
        passed = run_smoke(client)

    assert passed[0] == "/healthz ok"
    assert passed[-1] == "delete ok"
    assert any(line.startswith("chat ok") for line in passed)


def test_smoke_check_reports_bad_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="starting"))
    with httpx.Client(transport=transport, base_url="http://api") as client:
        with pytest.raises(SmokeFailure):
            run_smoke(client)


def test_main_returns_1_when_unreachable():
    assert main(["--base-url", "http://127.0.0.1:9", "--timeout", "0.5"]) == 1
