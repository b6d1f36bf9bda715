from __future__ import annotations

import threading
import urllib.error
import urllib.request

from agent.src.health import start_health_server
from agent.src.metrics import METRICS


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
        self.server = start_health_server(ready=self.ready, port=0, host="127.0.0.1")
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()
        self.server.server_close()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_before_node_resolved(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false"

    def test_readyz_returns_200_once_ready(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"

    def test_readyz_follows_ready_being_cleared(self) -> None:
        self.ready.set()
        self.ready.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_metrics_exposes_agent_metrics(self) -> None:
        METRICS.ready.set(0)
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "kubeip_agent_ready" in body

    def test_unknown_path_returns_404(self) -> None:
        status, _ = _get(f"{self.base_url}/nope")
        assert status == 404
