"""GitHub change-request hosting over the REST API."""

from __future__ import annotations

import base64
from typing import Any

import httpx
from loguru import logger

from healguard.integrations.vcs import VCSAdapter, VCSError
from healguard.models import (
    ChangeOperation,
    ChangeRequestRef,
    ChangeRequestStatus,
    CodeChange,
    GitHubConfig,
    ProposalMetadata,
    TestResult,
)


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        request = response.request
        raise VCSError(f"GitHub {request.method} {request.url.path} returned invalid JSON") from e


def _field(data: Any, *keys: str, context: str) -> Any:
    """Look up a nested field in a GitHub response."""
    try:
        for key in keys:
            data = data[key]
    except (KeyError, IndexError, TypeError) as e:
        raise VCSError(f"Unexpected GitHub response for {context}: missing {'.'.join(keys)}") from e
    return data


def _objects(data: Any, context: str) -> list[dict]:
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise VCSError(f"Unexpected GitHub response for {context}: expected a list of objects")
    return data


class GitHubAdapter(VCSAdapter):
    """Opens pull requests for proposals."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str | None = None,
        api_url: str = "https://api.github.com",
        client: httpx.AsyncClient | None = None,
    ):
        self.owner = owner
        self.repo = repo
        self.token = token
        self.api_url = api_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_config(cls, config: GitHubConfig) -> "GitHubAdapter":
        if not config.owner or not config.repo:
            raise ValueError("GitHub owner and repo must be configured")
        return cls(owner=config.owner, repo=config.repo, token=config.token, api_url=config.api_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/vnd.github+json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(base_url=self.api_url, headers=headers, timeout=30.0)
        return self._client

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._get_client().request(method, f"{self._repo_path}{path}", **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise VCSError(f"GitHub {method} {path} failed: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise VCSError(f"GitHub {method} {path} failed: {e}") from e

    async def _file_sha(self, path: str, branch: str) -> str | None:
        try:
            response = await self._get_client().get(
                f"{self._repo_path}/contents/{path}", params={"ref": branch}
            )
        except httpx.HTTPError as e:
            raise VCSError(f"GitHub lookup of {path} failed: {e}") from e
        if response.status_code == 404:
            return None
        if response.is_error:
            raise VCSError(f"GitHub lookup of {path} failed: HTTP {response.status_code}")
        return _field(_json(response), "sha", context=f"contents of {path}")

    async def _commit_change(self, change: CodeChange, branch: str) -> None:
        message = f"{change.operation.value}: {change.file_path}"
        if change.reason:
            message += f"\n\n{change.reason}"

        sha = None
        if change.operation != ChangeOperation.CREATE:
            sha = await self._file_sha(change.file_path, branch)

        if change.operation == ChangeOperation.DELETE:
            if sha is None:
                raise VCSError(f"Cannot delete missing file {change.file_path}")
            await self._request(
                "DELETE",
                f"/contents/{change.file_path}",
                json={"message": message, "sha": sha, "branch": branch},
            )
            return

        body = {
            "message": message,
            "content": base64.b64encode((change.after or "").encode()).decode(),
            "branch": branch,
        }
        if sha:
            body["sha"] = sha
        await self._request("PUT", f"/contents/{change.file_path}", json=body)

    async def _discard(self, branch: str, number: int | None) -> None:
        """Undo a partially created change request so it can be submitted again."""
        if number is not None:
            try:
                await self.close(str(number))
            except VCSError as e:
                logger.warning(f"Could not close PR #{number} after failed submit: {e}")
        try:
            await self.delete_branch(branch)
        except VCSError as e:
            logger.warning(f"Could not delete branch {branch} after failed submit: {e}")

    async def create_change_request(
        self,
        branch: str,
        base: str,
        metadata: ProposalMetadata,
        changes: list[CodeChange],
    ) -> ChangeRequestRef:
        ref = await self._request("GET", f"/git/ref/heads/{base}")
        base_sha = _field(_json(ref), "object", "sha", context=f"branch {base}")

        await self._request("POST", "/git/refs", json={"ref": f"refs/heads/{branch}", "sha": base_sha})
        logger.debug(f"Created branch {branch} from {base} ({str(base_sha)[:7]})")

        number = None
        try:
            for change in changes:
                await self._commit_change(change, branch)

            pr = _json(
                await self._request(
                    "POST",
                    "/pulls",
                    json={"title": metadata.title, "body": metadata.description, "head": branch, "base": base},
                )
            )
            number = _field(pr, "number", context=f"pull request for {branch}")

            if metadata.labels:
                await self._request("POST", f"/issues/{number}/labels", json={"labels": metadata.labels})
        except VCSError:
            await self._discard(branch, number)
            raise

        if metadata.reviewers:
            try:
                await self._request(
                    "POST", f"/pulls/{number}/requested_reviewers", json={"reviewers": metadata.reviewers}
                )
            except VCSError as e:
                # Reviewers may not be collaborators; the PR is still valid
                logger.warning(f"Could not request reviewers on PR #{number}: {e}")

        logger.info(f"Opened PR #{number} for {branch}")
        return ChangeRequestRef(reference_id=str(number), url=pr.get("html_url"))

    async def get_status(self, reference_id: str) -> ChangeRequestStatus:
        pr = _json(await self._request("GET", f"/pulls/{reference_id}"))
        head_sha = _field(pr, "head", "sha", context=f"PR #{reference_id}")

        data = _json(await self._request("GET", f"/commits/{head_sha}/check-runs"))
        runs = _objects(_field(data, "check_runs", context=f"checks on {head_sha}"), f"checks on {head_sha}")
        checks = []
        pending = []
        for run in runs:
            if run.get("status") != "completed":
                pending.append(run.get("name", "check"))
                continue
            passed = run.get("conclusion") in ("success", "neutral", "skipped")
            summary = (run.get("output") or {}).get("title")
            checks.append(
                TestResult(
                    test_suite=run.get("name", "check"),
                    passed=passed,
                    failures=[] if passed else [summary or run.get("conclusion") or "failed"],
                )
            )

        reviews = _objects(
            _json(await self._request("GET", f"/pulls/{reference_id}/reviews")), f"reviews on PR #{reference_id}"
        )
        approvals = [
            r["user"]["login"]
            for r in reviews
            if r.get("state") == "APPROVED" and isinstance(r.get("user"), dict) and "login" in r["user"]
        ]

        return ChangeRequestStatus(
            reference_id=reference_id,
            state=pr.get("state", "open"),
            merged=bool(pr.get("merged")),
            checks=checks,
            pending_checks=pending,
            approvals=approvals,
        )

    async def merge(self, reference_id: str) -> None:
        await self._request("PUT", f"/pulls/{reference_id}/merge", json={"merge_method": "squash"})

    async def close(self, reference_id: str) -> None:
        await self._request("PATCH", f"/pulls/{reference_id}", json={"state": "closed"})

    async def delete_branch(self, branch: str) -> None:
        await self._request("DELETE", f"/git/refs/heads/{branch}")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
