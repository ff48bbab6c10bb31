import os

import pytest
import requests

API = os.environ.get("RUNBOX_API_URL")

pytestmark = pytest.mark.skipif(not API, reason="set RUNBOX_API_URL to run against a live service")


def test_lifecycle():
    # assumes `runbox serve` is running at RUNBOX_API_URL
    assert requests.get(f"{API}/api/health", timeout=5).json()["status"] == "healthy"

    langs = requests.get(f"{API}/api/execution/languages", timeout=5).json()["languages"]
    assert "python" in langs

    r = requests.post(f"{API}/api/execution", json={"language": "python", "source": "print('ok')"}, timeout=30)
    assert r.status_code == 200
    assert r.json()["state"] == "Completed"
    assert r.json()["stdout"] == "ok\n"


def test_timeout_over_http():
    r = requests.post(f"{API}/api/execution", json={
        "language": "python",
        "source": "while True: pass",
        "limitsOverride": {"wallTimeMs": 1000},
    }, timeout=30)
    assert r.status_code == 200
    assert r.json()["state"] == "TimedOut"
