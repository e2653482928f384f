"""FastAPI server for the HealGuard reviewer surface."""

from __future__ import annotations

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import BaseModel

from healguard.core.governor import Governor
from healguard.errors import ProposalStateError, TicketStateError
from healguard.models import (
    AuditFilters,
    DetectedIssue,
    EventType,
    HealingAction,
    ProposalStatus,
    Severity,
    TicketStatus,
)


def get_governor(request: Request) -> Governor:
    """Get the governor bound to this app."""
    governor = getattr(request.app.state, "governor", None)
    if governor is None:
        raise HTTPException(status_code=503, detail="Governor not initialized")
    return governor


# Security
security = HTTPBearer(auto_error=False)


async def verify_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(security),
) -> bool:
    """Verify the API token if authentication is enabled."""
    governor = getattr(request.app.state, "governor", None)
    if governor is None:
        return True

    auth = governor.config.api.auth
    if not auth.enabled:
        return True

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    if credentials.credentials != auth.token:
        raise HTTPException(status_code=401, detail="Invalid token")

    return True


# Request Models
class TicketReviewRequest(BaseModel):
    reviewer: str
    notes: str | None = None


class TicketEscalateRequest(BaseModel):
    reviewer: str
    reason: str


class ProposalApproveRequest(BaseModel):
    reviewer: str


class ProposalRejectRequest(BaseModel):
    reviewer: str
    reason: str


class ProposalCloseRequest(BaseModel):
    reason: str = ""


class EvaluateRequest(BaseModel):
    issue: DetectedIssue
    action: HealingAction


# Response Models
class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    pending_tickets: int = 0
    pending_proposals: int = 0


def _proposal_error(governor: Governor, proposal_id: str, error: ProposalStateError) -> HTTPException:
    if governor.proposals.get_proposal(proposal_id) is None:
        return HTTPException(status_code=404, detail=f"Proposal not found: {proposal_id}")
    return HTTPException(status_code=409, detail=str(error))


def _ticket_error(governor: Governor, ticket_id: str, error: TicketStateError) -> HTTPException:
    if governor.audit.get_ticket(ticket_id) is None:
        return HTTPException(status_code=404, detail=f"Ticket not found: {ticket_id}")
    return HTTPException(status_code=409, detail=str(error))


def create_app(governor: Governor | None = None) -> FastAPI:
    """Create the FastAPI application."""
    from healguard import __version__

    app = FastAPI(
        title="HealGuard API",
        description="Review surface for autonomous remediation",
        version=__version__,
    )
    app.state.governor = governor

    @app.get("/health", response_model=HealthResponse)
    async def health(gov: Governor = Depends(get_governor)):
        """Get service health."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            environment=gov.config.environment,
            pending_tickets=len(gov.audit.get_pending_review_tickets()),
            pending_proposals=len(gov.proposals.get_pending_proposals()),
        )

    # ========================================================================
    # Tickets
    # ========================================================================

    @app.get("/api/v1/tickets")
    async def list_tickets(
        status: TicketStatus | None = Query(None, description="Filter by status"),
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        tickets = gov.audit.get_tickets(status)
        return {"tickets": [t.model_dump(mode="json") for t in tickets], "total": len(tickets)}

    @app.get("/api/v1/tickets/pending")
    async def pending_tickets(
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        """Open tickets, highest priority first."""
        tickets = gov.audit.get_pending_review_tickets()
        return {"tickets": [t.model_dump(mode="json") for t in tickets], "total": len(tickets)}

    @app.get("/api/v1/tickets/{ticket_id}")
    async def get_ticket(
        ticket_id: str,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        ticket = gov.audit.get_ticket(ticket_id)
        if ticket is None:
            raise HTTPException(status_code=404, detail=f"Ticket not found: {ticket_id}")
        return ticket.model_dump(mode="json")

    @app.post("/api/v1/tickets/{ticket_id}/approve")
    async def approve_ticket(
        ticket_id: str,
        body: TicketReviewRequest,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        try:
            ticket = gov.approve_ticket(ticket_id, body.reviewer, body.notes)
        except TicketStateError as e:
            raise _ticket_error(gov, ticket_id, e) from e
        return ticket.model_dump(mode="json")

    @app.post("/api/v1/tickets/{ticket_id}/reject")
    async def reject_ticket(
        ticket_id: str,
        body: TicketReviewRequest,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        try:
            ticket = gov.reject_ticket(ticket_id, body.reviewer, body.notes)
        except TicketStateError as e:
            raise _ticket_error(gov, ticket_id, e) from e
        return ticket.model_dump(mode="json")

    @app.post("/api/v1/tickets/{ticket_id}/escalate")
    async def escalate_ticket(
        ticket_id: str,
        body: TicketEscalateRequest,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        try:
            ticket = gov.audit.escalate_ticket(ticket_id, body.reviewer, body.reason)
        except TicketStateError as e:
            raise _ticket_error(gov, ticket_id, e) from e
        return ticket.model_dump(mode="json")

    # ========================================================================
    # Audit
    # ========================================================================

    @app.get("/api/v1/audit")
    async def audit_logs(
        issue_id: str | None = Query(None),
        strategy: str | None = Query(None),
        event_type: EventType | None = Query(None),
        severity: Severity | None = Query(None),
        requires_review: bool | None = Query(None),
        limit: int = Query(100, ge=1, le=1000),
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        filters = AuditFilters(
            issue_id=issue_id,
            strategy=strategy,
            event_type=event_type,
            severity=severity,
            requires_review=requires_review,
            limit=limit,
        )
        entries = gov.audit.get_audit_logs(filters)
        return {"entries": [e.model_dump(mode="json") for e in entries], "total": len(entries)}

    @app.get("/api/v1/pending-fixes")
    async def pending_fixes(
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        fixes = gov.sandbox.get_pending_fixes()
        return {"fixes": [f.to_dict() for f in fixes.values()], "total": len(fixes)}

    @app.get("/api/v1/rate-limits")
    async def rate_limits(
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        return {
            "max_actions": gov.rate_limiter.max_actions,
            "window_seconds": gov.rate_limiter.window_seconds,
            "usage": gov.rate_limiter.get_usage(),
        }

    @app.post("/api/v1/evaluate")
    async def evaluate(
        body: EvaluateRequest,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        """Dry run an action through policy and sandbox."""
        outcome = await gov.evaluate(body.issue, body.action)
        return outcome.to_dict()

    # ========================================================================
    # Proposals
    # ========================================================================

    @app.get("/api/v1/proposals")
    async def list_proposals(
        status: ProposalStatus | None = Query(None),
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        proposals = gov.proposals.list_proposals(status)
        return {"proposals": [p.model_dump(mode="json") for p in proposals], "total": len(proposals)}

    @app.get("/api/v1/proposals/{proposal_id}")
    async def get_proposal(
        proposal_id: str,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        proposal = gov.proposals.get_proposal(proposal_id)
        if proposal is None:
            raise HTTPException(status_code=404, detail=f"Proposal not found: {proposal_id}")
        return proposal.model_dump(mode="json")

    @app.post("/api/v1/proposals/{proposal_id}/approve")
    async def approve_proposal(
        proposal_id: str,
        body: ProposalApproveRequest,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        try:
            proposal = gov.proposals.approve_proposal(proposal_id, body.reviewer)
        except ProposalStateError as e:
            raise _proposal_error(gov, proposal_id, e) from e
        return proposal.model_dump(mode="json")

    @app.post("/api/v1/proposals/{proposal_id}/reject")
    async def reject_proposal(
        proposal_id: str,
        body: ProposalRejectRequest,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        try:
            proposal = gov.proposals.reject_proposal(proposal_id, body.reviewer, body.reason)
        except ProposalStateError as e:
            raise _proposal_error(gov, proposal_id, e) from e
        return proposal.model_dump(mode="json")

    @app.post("/api/v1/proposals/{proposal_id}/merge")
    async def merge_proposal(
        proposal_id: str,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        try:
            proposal = await gov.proposals.merge_proposal(proposal_id)
        except ProposalStateError as e:
            raise _proposal_error(gov, proposal_id, e) from e
        return proposal.model_dump(mode="json")

    @app.post("/api/v1/proposals/{proposal_id}/close")
    async def close_proposal(
        proposal_id: str,
        body: ProposalCloseRequest | None = None,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        try:
            proposal = await gov.proposals.close_proposal(proposal_id, body.reason if body else "")
        except ProposalStateError as e:
            raise _proposal_error(gov, proposal_id, e) from e
        return proposal.model_dump(mode="json")

    @app.post("/api/v1/proposals/{proposal_id}/sync")
    async def sync_proposal(
        proposal_id: str,
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        try:
            proposal = await gov.proposals.sync_proposal(proposal_id)
        except ProposalStateError as e:
            raise _proposal_error(gov, proposal_id, e) from e
        return proposal.model_dump(mode="json")

    # ========================================================================
    # Alerts
    # ========================================================================

    @app.get("/api/v1/dashboard")
    async def dashboard_feed(
        limit: int = Query(50, ge=1, le=500),
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        items = gov.audit.persistence.db.get_dashboard_feed(limit) if gov.audit.persistence else []
        return {"items": items, "total": len(items)}

    @app.post("/api/v1/alerts/dispatch")
    async def dispatch_alerts(
        gov: Governor = Depends(get_governor),
        _auth: bool = Depends(verify_token),
    ):
        """Drain the alert outbox."""
        delivered = await gov.dispatcher.dispatch_pending() if gov.dispatcher else 0
        return {"delivered": delivered}

    return app


async def run_server(governor: Governor, host: str = "127.0.0.1", port: int = 9877) -> None:
    """Run the API server."""
    import uvicorn

    app = create_app(governor)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",  # Reduce uvicorn noise
    )
    server = uvicorn.Server(config)
    logger.info(f"HealGuard API listening on http://{host}:{port}")
    try:
        await server.serve()
    finally:
        await governor.close()
