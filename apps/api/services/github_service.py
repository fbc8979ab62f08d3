"""
GitHub Service

REST v3 client used by the commit engine.

Two write paths:
- upsert_file() without a custom date goes through the contents API
  (GitHub stamps the commit with the current server time).
- upsert_file() with a custom date builds the commit by hand
  (ref -> commit -> tree, new blob, new tree, new commit, force-move ref)
  because only the git data API accepts an arbitrary author/committer date.

Errors are mapped onto the commit engine taxonomy in core.exceptions.
A non-fast-forward ref update on the backdated path is not raised: it comes
back as CommitResult(success=False, recoverable=True) so bulk runs can count
it and continue.
"""

import base64
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import requests

from core.config import settings
from core.exceptions import (
    RemoteAuthError,
    RemoteConflictError,
    RemoteError,
    RemoteNotFoundError,
    RemoteRateLimitedError,
    UnknownRemoteError,
)

logger = logging.getLogger(__name__)

FALLBACK_BRANCH = "main"
FILE_MODE = "100644"


class BranchCache:
    """owner/repo -> default branch, for the life of the process (last writer wins)."""

    def __init__(self):
        self._branches: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._branches.get(key)

    def set(self, key: str, branch: str) -> None:
        self._branches[key] = branch

    def clear(self) -> None:
        self._branches.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._branches

    def __len__(self) -> int:
        return len(self._branches)


# Shared by every client in the process.
branch_cache = BranchCache()


@dataclass
class CommitResult:
    """Outcome of a single upsert_file() call.

    success=False is only ever returned for a recoverable conflict; every
    other failure is raised.
    """
    success: bool
    sha: Optional[str] = None
    url: Optional[str] = None
    date: Optional[datetime] = None
    branch: Optional[str] = None
    path: Optional[str] = None
    recoverable: bool = False
    error_code: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat() if self.date else None
        return data


@dataclass
class RemoteFile:
    path: str
    sha: str
    size: int = 0


@dataclass
class GitHubIdentity:
    id: Optional[int]
    login: str
    name: Optional[str]
    email: Optional[str]


def _iso8601(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def noreply_email(login: str, user_id: Optional[int]) -> str:
    if user_id:
        return f"{user_id}+{login}@users.noreply.github.com"
    return f"{login}@users.noreply.github.com"


def split_full_name(full_name: str):
    owner, _, repo = (full_name or "").partition("/")
    if not owner or not repo:
        raise RemoteNotFoundError(f"Invalid repository name: {full_name!r}")
    return owner, repo


class GitHubClient:
    """Authenticated GitHub REST client for one user token."""

    def __init__(
        self,
        token: str,
        *,
        api_base: Optional[str] = None,
        session: Optional[requests.Session] = None,
        cache: Optional[BranchCache] = None,
        timeout: Optional[int] = None,
        max_rate_limit_retries: Optional[int] = None,
        max_rate_limit_wait_s: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not token:
            raise RemoteAuthError("GitHub token is missing")
        self.token = token
        self.api_base = (api_base or settings.GITHUB_API_BASE).rstrip("/")
        self.session = session or requests.Session()
        self.branch_cache = cache if cache is not None else branch_cache
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT
        self.max_rate_limit_retries = (
            settings.GITHUB_RATE_LIMIT_RETRIES if max_rate_limit_retries is None else max_rate_limit_retries
        )
        self.max_rate_limit_wait_s = (
            settings.GITHUB_RATE_LIMIT_MAX_WAIT_S if max_rate_limit_wait_s is None else max_rate_limit_wait_s
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"token {self.token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": settings.GITHUB_USER_AGENT,
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
        allow_404: bool = False,
    ) -> Optional[Any]:
        url = f"{self.api_base}{path}"
        attempt = 0
        while True:
            try:
                response = self.session.request(
                    method,
                    url,
                    headers=self._headers(),
                    json=json,
                    params=params,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise UnknownRemoteError(f"GitHub request failed: {e}", details={"method": method, "path": path})

            if response.status_code < 300:
                if not response.content:
                    return {}
                return response.json()

            if response.status_code == 404 and allow_404:
                return None

            error = self._map_error(response, method, path)
            if (
                isinstance(error, RemoteRateLimitedError)
                and attempt < self.max_rate_limit_retries
                and error.retry_after_s <= self.max_rate_limit_wait_s
            ):
                attempt += 1
                logger.warning(
                    f"GitHub rate limited on {method} {path}, waiting {error.retry_after_s}s "
                    f"before retry {attempt}/{self.max_rate_limit_retries}"
                )
                self._sleep(error.retry_after_s)
                continue
            raise error

    @staticmethod
    def _error_message(response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return (response.text or "").strip() or f"HTTP {response.status_code}"
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
        return f"HTTP {response.status_code}"

    def _retry_after(self, response, default: int) -> int:
        header = response.headers.get("Retry-After")
        if header:
            try:
                return max(0, int(float(header)))
            except ValueError:
                pass
        reset = response.headers.get("X-RateLimit-Reset")
        if reset:
            try:
                return max(0, int(float(reset) - time.time()))
            except ValueError:
                pass
        return default

    def _map_error(self, response, method: str, path: str) -> RemoteError:
        status_code = response.status_code
        message = self._error_message(response)
        details = {"method": method, "path": path, "status": status_code}
        lowered = message.lower()

        if status_code == 429 or (
            status_code == 403
            and (response.headers.get("X-RateLimit-Remaining") == "0" or "rate limit" in lowered)
        ):
            retry_after = self._retry_after(response, default=60)
            return RemoteRateLimitedError(
                f"GitHub rate limit exceeded: {message}",
                retry_after_s=retry_after,
                status_code=status_code,
                details=details,
            )
        if status_code in (401, 403):
            return RemoteAuthError(f"GitHub authentication failed: {message}", status_code=status_code, details=details)
        if status_code == 404:
            return RemoteNotFoundError(f"GitHub resource not found: {message}", status_code=status_code, details=details)
        if "fast forward" in lowered or "fast-forward" in lowered:
            return RemoteConflictError(f"GitHub ref update rejected: {message}", status_code=status_code, details=details)
        return UnknownRemoteError(f"GitHub API error: {message}", status_code=status_code, details=details)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_authenticated_user(self) -> GitHubIdentity:
        """The token owner's identity, with a usable commit email."""
        data = self._request("GET", "/user")
        email = data.get("email")
        if not email:
            try:
                emails = self._request("GET", "/user/emails") or []
                primary = next(
                    (e for e in emails if e.get("primary") and e.get("verified")),
                    None,
                )
                email = primary.get("email") if primary else None
            except RemoteError as e:
                # /user/emails needs the user:email scope
                logger.info(f"Could not read GitHub emails for {data.get('login')}: {e}")
        if not email:
            email = noreply_email(data.get("login", ""), data.get("id"))
        return GitHubIdentity(
            id=data.get("id"),
            login=data.get("login", ""),
            name=data.get("name"),
            email=email,
        )

    def get_repository(self, owner: str, repo: str) -> Dict:
        return self._request("GET", f"/repos/{owner}/{repo}")

    def get_default_branch(self, owner: str, repo: str) -> str:
        key = f"{owner}/{repo}"
        cached = self.branch_cache.get(key)
        if cached:
            return cached

        try:
            branch = self.get_repository(owner, repo).get("default_branch") or FALLBACK_BRANCH
        except RemoteError as e:
            logger.warning(f"Default branch lookup failed for {key}, falling back to '{FALLBACK_BRANCH}': {e}")
            branch = FALLBACK_BRANCH

        self.branch_cache.set(key, branch)
        return branch

    def clear_branch_cache(self) -> None:
        self.branch_cache.clear()

    def get_file(self, owner: str, repo: str, path: str, branch: Optional[str] = None) -> Optional[RemoteFile]:
        params = {"ref": branch} if branch else None
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/contents/{quote(path, safe='/')}",
            params=params,
            allow_404=True,
        )
        if not data or isinstance(data, list):
            return None
        return RemoteFile(path=data.get("path", path), sha=data["sha"], size=data.get("size", 0))

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def upsert_file(
        self,
        full_name: str,
        path: str,
        content: str,
        message: str,
        branch: Optional[str] = None,
        custom_date: Optional[datetime] = None,
        author: Optional[Dict[str, str]] = None,
    ) -> CommitResult:
        owner, repo = split_full_name(full_name)
        branch = branch or self.get_default_branch(owner, repo)

        if custom_date is not None:
            return self._create_backdated_commit(owner, repo, branch, path, content, message, custom_date, author)
        return self._put_contents(owner, repo, branch, path, content, message, author)

    def _put_contents(
        self,
        owner: str,
        repo: str,
        branch: str,
        path: str,
        content: str,
        message: str,
        author: Optional[Dict[str, str]],
    ) -> CommitResult:
        body = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        existing = self.get_file(owner, repo, path, branch)
        if existing:
            body["sha"] = existing.sha
        if author and author.get("email"):
            body["author"] = {"name": author.get("name"), "email": author["email"]}
            body["committer"] = dict(body["author"])

        data = self._request("PUT", f"/repos/{owner}/{repo}/contents/{quote(path, safe='/')}", json=body)
        commit = data.get("commit") or {}
        committed_at = ((commit.get("committer") or {}).get("date"))
        return CommitResult(
            success=True,
            sha=commit.get("sha"),
            url=commit.get("html_url"),
            date=_parse_github_date(committed_at) or datetime.now(timezone.utc),
            branch=branch,
            path=path,
        )

    def _create_backdated_commit(
        self,
        owner: str,
        repo: str,
        branch: str,
        path: str,
        content: str,
        message: str,
        custom_date: datetime,
        author: Optional[Dict[str, str]],
    ) -> CommitResult:
        base = f"/repos/{owner}/{repo}/git"
        try:
            ref = self._request("GET", f"{base}/ref/heads/{branch}")
            tip_sha = ref["object"]["sha"]
            tip = self._request("GET", f"{base}/commits/{tip_sha}")
            base_tree = tip["tree"]["sha"]

            blob = self._request(
                "POST",
                f"{base}/blobs",
                json={
                    "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                    "encoding": "base64",
                },
            )
            tree = self._request(
                "POST",
                f"{base}/trees",
                json={
                    "base_tree": base_tree,
                    "tree": [{"path": path, "mode": FILE_MODE, "type": "blob", "sha": blob["sha"]}],
                },
            )

            stamp = _iso8601(custom_date)
            signature = {
                "name": (author or {}).get("name") or "CommitPulse",
                "email": (author or {}).get("email") or "noreply@users.noreply.github.com",
                "date": stamp,
            }
            commit = self._request(
                "POST",
                f"{base}/commits",
                json={
                    "message": message,
                    "tree": tree["sha"],
                    "parents": [tip_sha],
                    "author": signature,
                    "committer": dict(signature),
                },
            )
            self._request(
                "PATCH",
                f"{base}/refs/heads/{branch}",
                json={"sha": commit["sha"], "force": True},
            )
        except RemoteConflictError as e:
            logger.warning(f"Recoverable conflict writing {owner}/{repo}@{branch} for {_iso8601(custom_date)}: {e}")
            return CommitResult(
                success=False,
                date=custom_date,
                branch=branch,
                path=path,
                recoverable=True,
                error_code=e.error_code,
                error=e.message,
            )

        return CommitResult(
            success=True,
            sha=commit["sha"],
            url=commit.get("html_url") or f"https://github.com/{owner}/{repo}/commit/{commit['sha']}",
            date=custom_date,
            branch=branch,
            path=path,
        )


def _parse_github_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def client_for_user(user, **kwargs) -> GitHubClient:
    """Build a client from the user's stored (encrypted) token."""
    from services.token_encryption import decrypt_token

    token = decrypt_token(user.github_token)
    if not token:
        raise RemoteAuthError("GitHub account is not connected", details={"user_id": str(user.id)})
    return GitHubClient(token, **kwargs)
