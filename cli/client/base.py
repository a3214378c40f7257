"""Base HTTP Client for the Job Orchestrator API"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()


class OrchestratorError(Exception):
    """Base exception for Job Orchestrator API errors"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class APIClient:
    """HTTP client for the Job Orchestrator API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: int = 30,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_headers = headers or {}
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=self.default_headers,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response and extract data"""
        try:
            data = response.json()
        except ValueError:
            console.print(f"[red]Failed to parse response: {response.text}[/red]")
            raise OrchestratorError(
                f"Invalid JSON response: {response.status_code}", response.status_code
            ) from None

        if response.status_code >= 400:
            error_msg = "Unknown error"
            if isinstance(data, dict):
                error = data.get("error") or {}
                error_msg = error.get("message") or data.get("detail") or error_msg
            console.print(Panel(f"[red]{error_msg}[/red]", title="API Error"))
            raise OrchestratorError(
                f"API Error {response.status_code}: {error_msg}", response.status_code
            )

        # Envelope format (with "ok" field)
        if isinstance(data, dict) and "ok" in data:
            if not data.get("ok", False):
                error_msg = data.get("error", {}).get("message", "Request failed")
                console.print(Panel(f"[red]{error_msg}[/red]", title="Request Failed"))
                raise OrchestratorError(error_msg, response.status_code)
            return data.get("data", {})

        return data

    def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Make GET request"""
        try:
            request_headers = {**self.default_headers, **(headers or {})}
            response = self.client.get(
                f"/v1{path}", params=params, headers=request_headers
            )
            return self._handle_response(response)
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise OrchestratorError(f"Connection failed: {e}") from None

    def post(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Make POST request"""
        try:
            request_headers = {**self.default_headers, **(headers or {})}
            response = self.client.post(
                f"/v1{path}", json=json, params=params, headers=request_headers
            )
            return self._handle_response(response)
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise OrchestratorError(f"Connection failed: {e}") from None
