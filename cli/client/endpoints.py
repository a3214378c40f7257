"""API Endpoint Wrappers - Typed API calls"""

from typing import Any

from .base import APIClient, OrchestratorError
from ..utils.config_manager import config

__all__ = ["OrchestratorClient", "OrchestratorError"]

RUNNER_SECRET_HEADER = "X-Job-Runner-Secret"


class OrchestratorClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        runner_secret: str | None = None,
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or api_config.get("headers", {}) or {}
        self.runner_secret = runner_secret or api_config.get("runner_secret")

        self.api = APIClient(
            base_url=final_base_url,
            timeout=int(api_config.get("timeout", 30)),
            headers=final_headers,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def _runner_headers(self) -> dict[str, str]:
        if not self.runner_secret:
            raise OrchestratorError(
                "Runner secret not configured. "
                "Set it with: orchestrator config set api.runner_secret <secret>"
            )
        return {RUNNER_SECRET_HEADER: self.runner_secret}

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Jobs Endpoints
    def list_jobs(
        self,
        status: list[str] | None = None,
        type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def create_job(
        self,
        type: str,
        payload: dict[str, Any] | None = None,
        priority: int = 5,
        scheduled_for: str | None = None,
        total_items: int | None = None,
    ) -> dict[str, Any]:
        """Create a new job"""
        body: dict[str, Any] = {
            "type": type,
            "payload": payload or {},
            "priority": priority,
        }
        if scheduled_for:
            body["scheduled_for"] = scheduled_for
        if total_items is not None:
            body["total_items"] = total_items
        return self.api.post("/jobs", body)

    def retry_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/retry")

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/cancel")

    def get_job_logs(self, job_id: str) -> list[dict[str, Any]]:
        return self.api.get(f"/jobs/{job_id}/logs")

    def get_job_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")

    # Dispatcher
    def dispatch_tick(self) -> dict[str, Any]:
        """Run one dispatcher tick on the server"""
        return self.api.post("/jobs/dispatch", headers=self._runner_headers())

    # Imports Endpoints
    def create_import(
        self,
        rows: list[dict[str, Any]],
        kind: str | None = None,
        filename: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"rows": rows}
        if kind:
            body["kind"] = kind
        if filename:
            body["filename"] = filename
        return self.api.post("/imports", body)

    def list_imports(
        self, status: list[str] | None = None, limit: int = 20, offset: int = 0
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        return self.api.get("/imports", params)

    def get_import(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/imports/{job_id}")

    def process_import(self, job_id: str, batch_size: int | None = None) -> dict[str, Any]:
        """Process the next batch of an import job"""
        params = {"batch_size": batch_size} if batch_size else None
        return self.api.post(f"/imports/{job_id}/process", params=params)

    def cancel_import(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/imports/{job_id}/cancel")
