from __future__ import annotations

import threading
import urllib.error
import urllib.request

from clustermanager.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        assert _get(f"{self.base_url}/healthz") == (200, "ok")

    def test_readyz_follows_ready_event(self) -> None:
        assert _get(f"{self.base_url}/readyz") == (503, "ready=false")

        self.ready.set()
        assert _get(f"{self.base_url}/readyz") == (200, "ready=true")

        self.ready.clear()
        assert _get(f"{self.base_url}/readyz")[0] == 503

    def test_metrics_exposes_operator_series(self) -> None:
        import clustermanager.src.metrics  # noqa: F401

        status, body = _get(f"{self.base_url}/metrics")

        assert status == 200
        assert "clustermanager_reconcile_total" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404
