"""HTTP client for the HealGuard API."""

from __future__ import annotations

import httpx

from healguard.config import load_config


class APIClient:
    """Client for the HealGuard reviewer API."""

    def __init__(self, base_url: str | None = None, token: str | None = None):
        """Initialize the API client.

        Args:
            base_url: Base URL for the API (default: from config)
            token: Authentication token (default: from config)
        """
        if base_url is None:
            config = load_config()
            base_url = f"http://{config.api.host}:{config.api.port}"
            if config.api.auth.enabled and token is None:
                token = config.api.auth.token

        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "APIClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _get(self, path: str, params: dict | None = None) -> dict:
        response = self._get_client().get(path, params={k: v for k, v in (params or {}).items() if v is not None})
        response.raise_for_status()
        return response.json()

    def _post(self, path: str, body: dict | None = None) -> dict:
        response = self._get_client().post(path, json=body or {})
        response.raise_for_status()
        return response.json()

    def is_running(self) -> bool:
        """Check if the server is running and responding."""
        try:
            return self._get_client().get("/health").status_code == 200
        except httpx.RequestError:
            return False

    def health(self) -> dict:
        return self._get("/health")

    # Tickets

    def list_tickets(self, status: str | None = None, pending: bool = False) -> list[dict]:
        if pending:
            return self._get("/api/v1/tickets/pending")["tickets"]
        return self._get("/api/v1/tickets", {"status": status})["tickets"]

    def get_ticket(self, ticket_id: str) -> dict:
        return self._get(f"/api/v1/tickets/{ticket_id}")

    def approve_ticket(self, ticket_id: str, reviewer: str, notes: str | None = None) -> dict:
        return self._post(f"/api/v1/tickets/{ticket_id}/approve", {"reviewer": reviewer, "notes": notes})

    def reject_ticket(self, ticket_id: str, reviewer: str, notes: str | None = None) -> dict:
        return self._post(f"/api/v1/tickets/{ticket_id}/reject", {"reviewer": reviewer, "notes": notes})

    def escalate_ticket(self, ticket_id: str, reviewer: str, reason: str) -> dict:
        return self._post(f"/api/v1/tickets/{ticket_id}/escalate", {"reviewer": reviewer, "reason": reason})

    # Audit

    def audit_logs(
        self,
        issue_id: str | None = None,
        strategy: str | None = None,
        event_type: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        params = {"issue_id": issue_id, "strategy": strategy, "event_type": event_type, "limit": limit}
        return self._get("/api/v1/audit", params)["entries"]

    def pending_fixes(self) -> list[dict]:
        return self._get("/api/v1/pending-fixes")["fixes"]

    # Proposals

    def list_proposals(self, status: str | None = None) -> list[dict]:
        return self._get("/api/v1/proposals", {"status": status})["proposals"]

    def get_proposal(self, proposal_id: str) -> dict:
        return self._get(f"/api/v1/proposals/{proposal_id}")

    def approve_proposal(self, proposal_id: str, reviewer: str) -> dict:
        return self._post(f"/api/v1/proposals/{proposal_id}/approve", {"reviewer": reviewer})

    def reject_proposal(self, proposal_id: str, reviewer: str, reason: str) -> dict:
        return self._post(f"/api/v1/proposals/{proposal_id}/reject", {"reviewer": reviewer, "reason": reason})

    def merge_proposal(self, proposal_id: str) -> dict:
        return self._post(f"/api/v1/proposals/{proposal_id}/merge")

    def close_proposal(self, proposal_id: str, reason: str = "") -> dict:
        return self._post(f"/api/v1/proposals/{proposal_id}/close", {"reason": reason})

    def sync_proposal(self, proposal_id: str) -> dict:
        return self._post(f"/api/v1/proposals/{proposal_id}/sync")

    # Alerts

    def dispatch_alerts(self) -> int:
        return self._post("/api/v1/alerts/dispatch")["delivered"]
