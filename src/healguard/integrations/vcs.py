"""Version-control adapter interface and an in-process implementation."""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from loguru import logger

from healguard.models import (
    ChangeRequestRef,
    ChangeRequestStatus,
    CodeChange,
    ProposalMetadata,
    TestResult,
)


class VCSError(Exception):
    """A version-control call failed."""

    pass


class VCSAdapter(ABC):
    """Hosts change requests for code change proposals."""

    @abstractmethod
    async def create_change_request(
        self,
        branch: str,
        base: str,
        metadata: ProposalMetadata,
        changes: list[CodeChange],
    ) -> ChangeRequestRef:
        """Create a branch with the changes and open a change request on it."""

    @abstractmethod
    async def get_status(self, reference_id: str) -> ChangeRequestStatus:
        ...

    @abstractmethod
    async def merge(self, reference_id: str) -> None:
        ...

    @abstractmethod
    async def close(self, reference_id: str) -> None:
        ...

    @abstractmethod
    async def delete_branch(self, branch: str) -> None:
        ...

    async def aclose(self) -> None:
        pass


@dataclass
class LocalChangeRequest:
    """A change request held by LocalVCSAdapter."""

    reference_id: str
    branch: str
    base: str
    metadata: ProposalMetadata
    changes: list[CodeChange]
    state: str = "open"
    merged: bool = False
    checks: list[TestResult] = field(default_factory=list)
    pending_checks: list[str] = field(default_factory=list)


class LocalVCSAdapter(VCSAdapter):
    """Keeps change requests in memory.

    Used when no hosted VCS is configured, so proposals can still be
    reviewed through the API without touching a repository.
    """

    def __init__(self):
        self._counter = itertools.count(1)
        self.requests: dict[str, LocalChangeRequest] = {}
        self.branches: set[str] = set()

    def _get(self, reference_id: str) -> LocalChangeRequest:
        request = self.requests.get(reference_id)
        if request is None:
            raise VCSError(f"Unknown change request: {reference_id}")
        return request

    async def create_change_request(
        self,
        branch: str,
        base: str,
        metadata: ProposalMetadata,
        changes: list[CodeChange],
    ) -> ChangeRequestRef:
        if branch in self.branches:
            raise VCSError(f"Branch already exists: {branch}")
        reference_id = f"local-{next(self._counter)}"
        self.branches.add(branch)
        self.requests[reference_id] = LocalChangeRequest(
            reference_id=reference_id,
            branch=branch,
            base=base,
            metadata=metadata,
            changes=list(changes),
        )
        logger.debug(f"Opened local change request {reference_id} on {branch}")
        return ChangeRequestRef(reference_id=reference_id, url=f"local://{reference_id}")

    async def get_status(self, reference_id: str) -> ChangeRequestStatus:
        request = self._get(reference_id)
        return ChangeRequestStatus(
            reference_id=reference_id,
            state=request.state,
            merged=request.merged,
            checks=list(request.checks),
            pending_checks=list(request.pending_checks),
        )

    async def merge(self, reference_id: str) -> None:
        request = self._get(reference_id)
        if request.state != "open":
            raise VCSError(f"Change request {reference_id} is {request.state}")
        request.state = "closed"
        request.merged = True

    async def close(self, reference_id: str) -> None:
        request = self._get(reference_id)
        if request.state == "open":
            request.state = "closed"

    async def delete_branch(self, branch: str) -> None:
        self.branches.discard(branch)
