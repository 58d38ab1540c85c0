#!/usr/bin/env python3
"""org_inventory.py

Command-line utility to inventory every repository of a GitHub organization
together with its branch names, written to stdout as YAML (or JSON).

Usage:
  python org_inventory.py -o my-org -t <PERSONAL_ACCESS_TOKEN>
  python org_inventory.py -o my-org --json          # JSON instead of YAML
  python org_inventory.py -o my-org -e https://github.example.com
  python org_inventory.py -o my-org --max-workers 16 --timeout 600

The token and organization can also be provided via the GITHUB_AUTH_TOKEN
and GITHUB_ORG environment variables (or a `.env` file next to this script).
Branch lists are fetched concurrently, one task per repository. A repository
whose branch listing fails is still reported, flagged with `status: error`.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import queue
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, NoReturn, Optional, TextIO, Tuple
from urllib.parse import urlparse

import requests
import yaml
from dotenv import load_dotenv

# Load environment variables from .env located next to this script.
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

GITHUB_API_URL = "https://api.github.com/"
GITHUB_UPLOAD_URL = "https://uploads.github.com/"

TOKEN_ENV = "GITHUB_AUTH_TOKEN"
ORG_ENV = "GITHUB_ORG"
ENTERPRISE_URL_ENV = "GITHUB_ENTERPRISE_URL"

# GitHub caps per_page at 100 for both listings.
REPO_PAGE_SIZE = 100
BRANCH_PAGE_SIZE = 100

REQUEST_TIMEOUT = (10, 300)  # (connect_timeout, read_timeout) in seconds
DEFAULT_MAX_WORKERS = 8

STATUS_OK = "ok"
STATUS_ERROR = "error"

logger = logging.getLogger(__name__)
API_CALL_COUNT = 0
_API_CALL_LOCK = threading.Lock()

# Handlers installed by cli(), removed again on the next invocation.
_CLI_HANDLERS: List[logging.Handler] = []


# --- Errors --- #

class GitHubError(Exception):
    """Base class for errors raised while building the inventory."""


class GitHubAPIError(GitHubError):
    """A GitHub REST call failed (HTTP status, transport or payload error)."""

    def __init__(self, message: str, *, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class InventoryTimeout(GitHubError):
    """The overall run deadline passed before every repository reported."""


# --- Data model --- #

@dataclass
class RepositoryStub:
    name: str
    git_url: str
    clone_url: str


@dataclass
class RepositoryRecord:
    """One repository of the snapshot.

    *status* is ``"error"`` when the branch listing failed; *branches* then
    holds whatever arrived before the failure (usually nothing).
    """

    name: str
    git_url: str
    clone_url: str
    branches: List[str] = field(default_factory=list)
    status: str = STATUS_OK
    error: Optional[str] = None

    @classmethod
    def from_stub(cls, stub: RepositoryStub) -> "RepositoryRecord":
        return cls(name=stub.name, git_url=stub.git_url, clone_url=stub.clone_url)

    def to_dict(self, legacy: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "giturl": self.git_url,
            "cloneurl": self.clone_url,
            "branches": list(self.branches),
        }
        if legacy:
            return data
        data["status"] = self.status
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class OrganizationSnapshot:
    repos: List[RepositoryRecord] = field(default_factory=list)

    def to_dict(self, legacy: bool = False) -> Dict[str, Any]:
        return {"repos": [repo.to_dict(legacy=legacy) for repo in self.repos]}

    def by_name(self) -> Dict[str, RepositoryRecord]:
        return {repo.name: repo for repo in self.repos}

    @property
    def degraded(self) -> List[RepositoryRecord]:
        return [repo for repo in self.repos if repo.status != STATUS_OK]


# --- Client --- #

def resolve_endpoints(base_url: Optional[str]) -> Tuple[str, str]:
    """Return ``(api_url, upload_url)`` for github.com or an Enterprise host.

    A bare Enterprise host such as ``https://github.example.com`` resolves to
    ``/api/v3/`` and ``/api/uploads/``. A base URL that already ends in
    ``/api/v3`` keeps its path. Raises ValueError for anything that is not an
    absolute http(s) URL.
    """
    if not base_url:
        return GITHUB_API_URL, GITHUB_UPLOAD_URL

    parsed = urlparse(base_url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid enterprise URL: {base_url!r}")

    root = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path.rstrip("/")
    if path.endswith("/api/v3"):
        path = path[: -len("/api/v3")]
    return f"{root}{path}/api/v3/", f"{root}{path}/api/uploads/"


class GitHubClient:
    """Authenticated REST client shared read-only by every fetch task."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        request_timeout: Tuple[float, float] = REQUEST_TIMEOUT,
    ):
        self.api_url, self.upload_url = resolve_endpoints(base_url)
        self.request_timeout = request_timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
            }
        )

    def url(self, path: str) -> str:
        return self.api_url + path.lstrip("/")


def _github_get(
    client: GitHubClient, url: str, params: Optional[Dict[str, Any]] = None
) -> Tuple[Any, Optional[str]]:
    """GET *url* and return ``(payload, next_url)``.

    *next_url* comes from the ``Link: rel="next"`` header, or None on the last
    page. Every failure is raised as GitHubAPIError.
    """
    global API_CALL_COUNT
    with _API_CALL_LOCK:
        API_CALL_COUNT += 1
    start = time.perf_counter()
    try:
        resp = client.session.get(url, params=params, timeout=client.request_timeout)
        resp.raise_for_status()
        payload = resp.json()
    except requests.HTTPError as exc:
        status = exc.response.status_code
        raise GitHubAPIError(
            f"GitHub API error {status} for {url}: {exc.response.text}", status=status, url=url
        ) from exc
    except requests.JSONDecodeError as exc:
        # Subclass of RequestException, so it has to come first.
        raise GitHubAPIError(f"Invalid JSON from {url}: {exc}", url=url) from exc
    except requests.RequestException as exc:
        raise GitHubAPIError(f"GitHub connection error for {url}: {exc}", url=url) from exc
    logger.debug(
        "GET %s -> %s in %.3fs (rate limit remaining: %s)",
        resp.url,
        resp.status_code,
        time.perf_counter() - start,
        resp.headers.get("X-RateLimit-Remaining", "?"),
    )
    next_url = resp.links.get("next", {}).get("url")
    return payload, next_url


def _paginate(
    client: GitHubClient,
    url: str,
    params: Dict[str, Any],
    cancel_event: Optional[threading.Event] = None,
    deadline: Optional[float] = None,
) -> Iterator[Dict[str, Any]]:
    """Yield every item of a paged REST listing, page by page.

    *deadline* is a ``time.monotonic()`` value checked before each request.
    """
    next_url: Optional[str] = url
    page_params: Optional[Dict[str, Any]] = params
    while next_url:
        if cancel_event is not None and cancel_event.is_set():
            raise GitHubError(f"Cancelled before requesting {next_url}")
        if deadline is not None and time.monotonic() >= deadline:
            raise InventoryTimeout(f"Deadline passed before requesting {next_url}")
        payload, next_url = _github_get(client, next_url, page_params)
        # The next link already carries the query string.
        page_params = None
        yield from payload


# --- Enumerator --- #

def fetch_repos(client: GitHubClient, org: str, deadline: Optional[float] = None) -> List[RepositoryStub]:
    """Return every repository of *org* (all types), paging until exhausted."""
    params = {"type": "all", "sort": "full_name", "per_page": REPO_PAGE_SIZE}
    stubs: List[RepositoryStub] = []
    for item in _paginate(client, client.url(f"orgs/{org}/repos"), params, deadline=deadline):
        stubs.append(
            RepositoryStub(
                name=item["name"],
                git_url=item.get("git_url") or "",
                clone_url=item.get("clone_url") or "",
            )
        )
    logger.debug("Repository list for %s: %s", org, [stub.name for stub in stubs])
    return stubs


# --- Branch fetcher --- #

def fetch_branches(
    client: GitHubClient,
    org: str,
    repo: str,
    cancel_event: Optional[threading.Event] = None,
) -> Iterator[str]:
    """Yield the branch names of *org/repo* in the order GitHub returns them."""
    params = {"per_page": BRANCH_PAGE_SIZE}
    url = client.url(f"repos/{org}/{repo}/branches")
    for item in _paginate(client, url, params, cancel_event):
        yield item["name"]


def build_repo_record(
    client: GitHubClient,
    org: str,
    stub: RepositoryStub,
    cancel_event: Optional[threading.Event] = None,
) -> RepositoryRecord:
    """Fetch the branches of one repository.

    A failed listing does not raise: the record comes back flagged as an error
    so the rest of the inventory is unaffected.
    """
    record = RepositoryRecord.from_stub(stub)
    try:
        for branch in fetch_branches(client, org, stub.name, cancel_event):
            record.branches.append(branch)
    except GitHubError as exc:
        record.status = STATUS_ERROR
        record.error = str(exc)
        logger.error("Error listing branches for %s/%s: %s", org, stub.name, exc)
    return record


# --- Coordinator --- #

_SINK_CLOSED = object()


def _publish_repo_record(
    client: GitHubClient,
    org: str,
    stub: RepositoryStub,
    sink: "queue.Queue[Any]",
    cancel_event: threading.Event,
) -> None:
    record = RepositoryRecord.from_stub(stub)
    try:
        record = build_repo_record(client, org, stub, cancel_event)
    except Exception as exc:
        record.status = STATUS_ERROR
        record.error = f"Unexpected error: {exc}"
        raise
    finally:
        sink.put(record)


def _fetch_worker(
    client: GitHubClient,
    org: str,
    work: "queue.Queue[RepositoryStub]",
    sink: "queue.Queue[Any]",
    cancel_event: threading.Event,
    failures: List[BaseException],
) -> None:
    while not cancel_event.is_set():
        try:
            stub = work.get_nowait()
        except queue.Empty:
            return
        try:
            _publish_repo_record(client, org, stub, sink, cancel_event)
        except Exception as exc:
            failures.append(exc)


def _close_sink_when_done(workers: List[threading.Thread], sink: "queue.Queue[Any]") -> None:
    for worker in workers:
        worker.join()
    sink.put(_SINK_CLOSED)


def collect_org_inventory(
    client: GitHubClient,
    org: str,
    stubs: List[RepositoryStub],
    max_workers: int = DEFAULT_MAX_WORKERS,
    timeout: Optional[float] = None,
) -> OrganizationSnapshot:
    """Fetch the branches of every stub concurrently and gather the records.

    *max_workers* daemon threads (``0`` gives every repository its own thread)
    take stubs off a work queue. Each task publishes exactly one record to a
    sink queue; a watcher thread closes the sink once every worker has exited.
    The snapshot therefore always holds ``len(stubs)`` records, in completion
    order.

    With *timeout* set, InventoryTimeout is raised once it elapses. Queued
    stubs are never started and running tasks stop before their next page.
    Workers are daemon threads, so a request still stalled in flight does not
    keep the process alive after the caller gives up.
    """
    if not stubs:
        return OrganizationSnapshot()
    width = max_workers if max_workers > 0 else len(stubs)
    width = min(width, len(stubs))
    logger.info("Fetching branches for %d repositories (%d workers)", len(stubs), width)

    work: "queue.Queue[RepositoryStub]" = queue.Queue()
    for stub in stubs:
        work.put(stub)
    sink: "queue.Queue[Any]" = queue.Queue()
    cancel_event = threading.Event()
    failures: List[BaseException] = []
    snapshot = OrganizationSnapshot()
    deadline = time.monotonic() + timeout if timeout is not None else None

    workers = [
        threading.Thread(
            target=_fetch_worker,
            args=(client, org, work, sink, cancel_event, failures),
            name=f"branches-{i}",
            daemon=True,
        )
        for i in range(width)
    ]
    for worker in workers:
        worker.start()
    watcher = threading.Thread(
        target=_close_sink_when_done, args=(workers, sink), name="sink-closer", daemon=True
    )
    watcher.start()

    drained = False
    try:
        while True:
            remaining = None
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
            try:
                item = sink.get(timeout=remaining)
            except queue.Empty:
                raise InventoryTimeout(
                    f"Timed out with {len(snapshot.repos)}/{len(stubs)} repositories fetched"
                ) from None
            if item is _SINK_CLOSED:
                break
            snapshot.repos.append(item)
            logger.debug("Collected %s (%d/%d)", item.name, len(snapshot.repos), len(stubs))
        drained = True
    finally:
        if not drained:
            cancel_event.set()

    # Surface programming errors from the tasks; API errors never get here.
    if failures:
        raise failures[0]
    return snapshot


# --- Encoder --- #

def render_snapshot(snapshot: OrganizationSnapshot, fmt: str = "yaml", legacy: bool = False) -> str:
    """Serialize *snapshot* as a YAML or JSON document."""
    data = snapshot.to_dict(legacy=legacy)
    if fmt == "json":
        return json.dumps(data, indent=2) + "\n"
    if fmt == "yaml":
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
    raise ValueError(f"Unknown output format: {fmt!r}")


def write_snapshot(
    snapshot: OrganizationSnapshot,
    stream: TextIO,
    fmt: str = "yaml",
    legacy: bool = False,
) -> None:
    """Render the whole document first, then write it in a single call."""
    stream.write(render_snapshot(snapshot, fmt=fmt, legacy=legacy))
    stream.flush()


# --- CLI --- #

@dataclass
class Settings:
    token: str
    org: str
    enterprise_url: Optional[str] = None


def resolve_settings(args: argparse.Namespace, environ: Mapping[str, str] = os.environ) -> Settings:
    """Combine flags with their environment fallbacks.

    Raises ValueError naming every required value that is missing.
    """
    token = args.token or environ.get(TOKEN_ENV, "")
    org = args.org or environ.get(ORG_ENV, "")
    enterprise_url = args.enterprise_url or environ.get(ENTERPRISE_URL_ENV) or None

    missing = []
    if not token:
        missing.append(f"No value for '--token' or {TOKEN_ENV}")
    if not org:
        missing.append(f"No value for '--org' or {ORG_ENV}")
    if missing:
        raise ValueError("; ".join(missing))
    return Settings(token=token, org=org, enterprise_url=enterprise_url)


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be 0 or greater, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="List every repository of a GitHub organization with its branches."
    )
    parser.add_argument("-t", "--token", help=f"GitHub token (or set {TOKEN_ENV})")
    parser.add_argument("-o", "--org", help=f"GitHub organization (or set {ORG_ENV})")
    parser.add_argument(
        "-e", "--enterprise-url",
        help=f"GitHub Enterprise base URL, e.g. https://github.example.com (or set {ENTERPRISE_URL_ENV})",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Dump API responses and the final inventory to stderr")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of YAML")
    parser.add_argument(
        "--legacy-output", action="store_true",
        help="Omit the per-repository status/error fields (failed repositories show empty branches)",
    )
    parser.add_argument(
        "--max-workers", type=_non_negative_int, default=DEFAULT_MAX_WORKERS,
        help="Concurrent branch fetches (0 = one per repository)",
    )
    parser.add_argument(
        "--request-timeout", type=float, default=REQUEST_TIMEOUT[1],
        help="Read timeout in seconds for each API request",
    )
    parser.add_argument(
        "--timeout", type=float,
        help="Abort the run after this many seconds; enforced during branch fetching, "
             "checked between repository list pages",
    )
    parser.add_argument("--log-dir", help="Directory to save a timestamped debug log")
    return parser


def configure_logging(debug: bool, log_dir: Optional[str] = None) -> None:
    root_logger = logging.getLogger()
    for handler in _CLI_HANDLERS:
        root_logger.removeHandler(handler)
        handler.close()
    _CLI_HANDLERS.clear()

    root_logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%dT%H:%M:%S%z")

    # Console goes to stderr so stdout only ever carries the document.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    _CLI_HANDLERS.append(console_handler)

    if log_dir:
        debug_log_dir = Path(log_dir)
        debug_log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        file_handler = logging.FileHandler(debug_log_dir / f"org_inventory_{timestamp}.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        _CLI_HANDLERS.append(file_handler)


def _fail(message: str) -> NoReturn:
    logger.error(message)
    raise SystemExit(1)


def cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.debug, args.log_dir)

    try:
        settings = resolve_settings(args)
    except ValueError as exc:
        _fail(str(exc))

    start_time = time.perf_counter()
    try:
        client = GitHubClient(
            settings.token,
            base_url=settings.enterprise_url,
            request_timeout=(REQUEST_TIMEOUT[0], args.request_timeout),
        )
    except ValueError as exc:
        _fail(f"Could not create GitHub client: {exc}")
    logger.info("Starting inventory of organization %s via %s", settings.org, client.api_url)

    deadline = time.monotonic() + args.timeout if args.timeout is not None else None
    try:
        stubs = fetch_repos(client, settings.org, deadline=deadline)
    except InventoryTimeout as exc:
        _fail(f"Timed out listing repositories: {exc}")
    except GitHubError as exc:
        _fail(f"An error occurred listing repositories: {exc}")
    logger.info("Found %d repositories in %s", len(stubs), settings.org)

    remaining = None
    if deadline is not None:
        remaining = max(0.0, deadline - time.monotonic())
    try:
        snapshot = collect_org_inventory(
            client, settings.org, stubs, max_workers=args.max_workers, timeout=remaining
        )
    except InventoryTimeout as exc:
        _fail(str(exc))

    if snapshot.degraded:
        logger.warning(
            "%d of %d repositories have incomplete branch lists: %s",
            len(snapshot.degraded),
            len(snapshot.repos),
            ", ".join(repo.name for repo in snapshot.degraded),
        )
    logger.debug("Inventory: %s", snapshot.to_dict())

    try:
        write_snapshot(snapshot, sys.stdout, fmt="json" if args.json else "yaml", legacy=args.legacy_output)
    except (yaml.YAMLError, OSError, TypeError, ValueError) as exc:
        _fail(f"An error occurred in encoding: {exc}")

    logger.info("Total GitHub API calls: %d", API_CALL_COUNT)
    logger.info("Total runtime: %.2f seconds", time.perf_counter() - start_time)
    return 0


if __name__ == "__main__":
    sys.exit(cli())
