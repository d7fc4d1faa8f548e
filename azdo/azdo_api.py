"""
Clean wrappers for Azure DevOps Build REST API calls.

All functions raise meaningful exceptions rather than returning error strings,
so callers (MCP tools) can decide how to surface the failure.
"""

import logging
import time
from urllib.parse import quote

import requests

from azdo import config

logger = logging.getLogger(__name__)

_API_VERSION = "7.1"
_REPORT_API_VERSION = "7.1-preview.2"
_TIMEOUT = 30

_MAX_LOG_BYTES = 10 * 1024 * 1024   # 10 MB
_MAX_REPORT_BYTES = 50 * 1024       # 50 KB, report HTML goes into context window
_MAX_BUILDS = 100
_DEFAULT_TOP = 10

_BRANCH_PREFIX = "refs/heads/"
_DEFAULT_BRANCH = "refs/heads/main"

_RETRYABLE_STATUSES = {429, 502, 503, 504}
_MAX_RETRIES = 2
_RETRY_DELAYS = (1, 3)  # seconds between retry 0→1 and 1→2

_CONTINUATION_HEADER = "x-ms-continuationtoken"


def _get(path: str, *, params: dict | None = None,
         api_version: str = _API_VERSION, **kwargs) -> requests.Response:
    """HTTP GET against the project's build API with bounded retry for
    transient failures (429/502/503/504)."""
    settings = config.get_settings()
    url = f"{settings.url}/{quote(settings.project, safe='')}/_apis/build{path}"
    query = dict(params or {})
    query["api-version"] = api_version
    for attempt in range(_MAX_RETRIES + 1):
        try:
            response = requests.get(
                url, params=query, auth=("", settings.key), timeout=_TIMEOUT, **kwargs,
            )
            if response.status_code in _RETRYABLE_STATUSES and attempt < _MAX_RETRIES:
                time.sleep(_RETRY_DELAYS[attempt])
                continue
            # Azure DevOps answers a rejected PAT with a 203 sign-in page.
            if response.status_code == 203:
                response.close()
                raise PermissionError(
                    "Azure DevOps rejected the access token (HTTP 203). "
                    "Check VSKey / AZDO_PAT."
                )
            response.raise_for_status()
            return response
        except requests.HTTPError as exc:
            logger.debug("Azure DevOps HTTP %s for %s", exc.response.status_code, url)
            raise
        except requests.ConnectionError:
            if attempt < _MAX_RETRIES:
                time.sleep(_RETRY_DELAYS[attempt])
                continue
            raise ConnectionError(
                f"Cannot reach Azure DevOps at {settings.url}. "
                "Verify VSUrl is correct."
            )
        except requests.Timeout:
            if attempt < _MAX_RETRIES:
                time.sleep(_RETRY_DELAYS[attempt])
                continue
            raise TimeoutError(
                f"Azure DevOps did not respond within {_TIMEOUT} seconds ({url})."
            )
    raise RuntimeError(f"Exhausted retries for {url}")


def normalize_branch_name(branch_name: str) -> str:
    """Turn a short branch name into a full ref.

    'main'                -> 'refs/heads/main'
    'refs/heads/feature'  -> unchanged
    'refs/pull/12/merge'  -> unchanged
    ''                    -> 'refs/heads/main'
    """
    branch_name = (branch_name or "").strip()
    if not branch_name:
        return _DEFAULT_BRANCH
    if branch_name.startswith("refs/"):
        return branch_name
    return f"{_BRANCH_PREFIX}{branch_name}"


def list_builds(branch_name: str, top: int = _DEFAULT_TOP) -> list[dict]:
    """Fetch completed builds of the configured definition for one branch.

    Follows the continuation token until ``top`` builds are collected.
    ``top`` is clamped to 1.._MAX_BUILDS.
    """
    settings = config.get_settings()
    top = max(1, min(top, _MAX_BUILDS))
    params = {
        "definitions": settings.build_definition_id,
        "statusFilter": "completed",
        "branchName": normalize_branch_name(branch_name),
        "$top": top,
    }

    builds: list[dict] = []
    while True:
        response = _get("/builds", params=params)
        builds.extend(response.json().get("value") or [])
        token = response.headers.get(_CONTINUATION_HEADER)
        if not token or len(builds) >= top:
            break
        params["continuationToken"] = token
    return builds[:top]


def get_build_report(build_id: int) -> dict | None:
    """Fetch the build report metadata.

    Returns None (not an error) when the build has no report (HTTP 404).
    """
    try:
        data = _get(f"/builds/{build_id}/report", api_version=_REPORT_API_VERSION).json()
    except requests.HTTPError as exc:
        if exc.response.status_code == 404:
            return None
        raise

    content = data.get("content") or ""
    if len(content) > _MAX_REPORT_BYTES:
        content = content[:_MAX_REPORT_BYTES] + "\n[REPORT TRUNCATED]"
    return {
        "build_id": data.get("buildId", build_id),
        "type": data.get("type"),
        "content": content,
    }


def get_build_timeline(build_id: int, timeline_id: str | None = None) -> dict | None:
    """Fetch a build timeline.

    Without ``timeline_id`` this is the current timeline; with one it is the
    timeline of a previous attempt.  Returns None on 404 or an empty body.
    """
    path = f"/builds/{build_id}/timeline"
    if timeline_id:
        path += f"/{timeline_id}"
    try:
        response = _get(path)
    except requests.HTTPError as exc:
        if exc.response.status_code == 404:
            return None
        raise
    if not response.content:
        return None
    return response.json()


def get_build_log(build_id: int, log_id: int) -> str:
    """Fetch the text of a single build log, streaming and capping at 10 MB."""
    response = _get(
        f"/builds/{build_id}/logs/{log_id}",
        headers={"Accept": "text/plain"},
        stream=True,
    )
    response.encoding = "utf-8"
    chunks: list[str] = []
    total = 0
    try:
        for chunk in response.iter_content(chunk_size=8192, decode_unicode=True):
            total += len(chunk.encode("utf-8"))
            chunks.append(chunk)
            if total >= _MAX_LOG_BYTES:
                chunks.append("\n[LOG TRUNCATED: exceeded 10 MB download limit]")
                break
    finally:
        response.close()
    return "".join(chunks)


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------


def prune_build(build: dict) -> dict:
    """Keep only the build fields the AI needs."""
    links = build.get("_links") or {}
    requested_for = build.get("requestedFor") or {}
    return {
        "id": build.get("id"),
        "build_number": build.get("buildNumber"),
        "status": build.get("status"),
        "result": build.get("result"),
        "source_branch": build.get("sourceBranch"),
        "source_version": build.get("sourceVersion"),
        "reason": build.get("reason"),
        "requested_for": requested_for.get("displayName"),
        "queue_time": build.get("queueTime"),
        "start_time": build.get("startTime"),
        "finish_time": build.get("finishTime"),
        "web_url": (links.get("web") or {}).get("href"),
    }


def prune_timeline_record(record: dict) -> dict:
    log = record.get("log") or {}
    return {
        "id": record.get("id"),
        "parent_id": record.get("parentId"),
        "type": record.get("type"),
        "name": record.get("name"),
        "state": record.get("state"),
        "result": record.get("result"),
        "attempt": record.get("attempt"),
        "error_count": record.get("errorCount") or 0,
        "warning_count": record.get("warningCount") or 0,
        "log_id": log.get("id"),
        "previous_attempts": len(record.get("previousAttempts") or []),
        "start_time": record.get("startTime"),
        "finish_time": record.get("finishTime"),
    }


def prune_timeline(timeline: dict | None) -> dict | None:
    if timeline is None:
        return None
    return {
        "id": timeline.get("id"),
        "change_id": timeline.get("changeId"),
        "records": [prune_timeline_record(r) for r in timeline.get("records") or []],
    }
