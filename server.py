"""
Azure DevOps Build Investigator MCP Server

A Model Context Protocol server that exposes the builds, timelines and job logs
of one Azure DevOps pipeline (project + build definition) as compact JSON, and
archives the logs of retried jobs to disk for offline comparison.

Transport: stdio by default (MCP_TRANSPORT=stdio, e.g. for Cursor/Claude Desktop).
           Set MCP_TRANSPORT=http for Streamable HTTP (MCP_HOST, MCP_PORT).
Logs:      stderr plus a daily rolling file under LOG_DIR (default ./logs);
           never stdout, which carries the JSON-RPC stream.
"""

import json
import logging
import logging.handlers
import os
import sys
from concurrent.futures import ThreadPoolExecutor, wait

import requests
from dotenv import load_dotenv
from fastmcp import FastMCP

from azdo import azdo_api, config, log_parser, timeline

load_dotenv()

logger = logging.getLogger("azdo-mcp")

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_LOG_FILE_NAME = "azdo-mcp.log"

_MAX_ITEMS = 10
_MAX_DETAILED_BUILDS = 10

mcp = FastMCP(
    "Azure DevOps Build Investigator",
    instructions=(
        "You are an Azure DevOps pipeline debugging assistant for a single, "
        "pre-configured pipeline. "
        "Start with get_builds for a branch to see the latest build, its report and timeline. "
        "Use get_build_logs with a build id to list every job log with its result, "
        "error count and an error excerpt for failed jobs. "
        "Use get_job_log to zoom into one log. "
        "Use archive_build_logs to save good/failed attempt logs of retried jobs to disk."
    ),
)


def configure_logging() -> None:
    """Route logs to stderr and, unless LOG_DIR is empty, a daily rolling file."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    log_dir = os.getenv("LOG_DIR", "logs")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.handlers.TimedRotatingFileHandler(
            os.path.join(log_dir, _LOG_FILE_NAME),
            when="midnight",
            encoding="utf-8",
        ))

    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=handlers, force=True)


def _handle_error(exc: Exception, context: str) -> str:
    """Convert common exceptions into readable strings for the AI."""
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code
        if status == 401:
            return f"[{context}] Authentication failed (401). Check VSKey / AZDO_PAT."
        if status == 404:
            return f"[{context}] Not found (404). Verify the build and log ids."
        return f"[{context}] Azure DevOps API error {status}: {exc.response.text[:300]}"
    if isinstance(exc, (ConnectionError, TimeoutError, PermissionError, config.ConfigurationError)):
        return f"[{context}] {exc}"
    return f"[{context}] Unexpected error: {exc}"


def _to_json(data) -> str:
    return json.dumps(data, indent=2, default=str)


# ---------------------------------------------------------------------------
# Branch queries
# ---------------------------------------------------------------------------


def _get_builds_without_logs(branch_name: str, max_items: int = _MAX_ITEMS) -> list[dict]:
    """List completed builds for a branch; failures are logged and yield []."""
    try:
        builds = azdo_api.list_builds(branch_name, top=max_items)
    except Exception:
        logger.exception("Error getting builds for branch %s", branch_name)
        return []

    for build in builds:
        logger.info(
            "Get Build: %s %s %s %s",
            build.get("id"), build.get("buildNumber"), build.get("status"), build.get("result"),
        )
    return builds


def _get_builds_with_logs(branch_name: str, base_path: str, max_items: int = _MAX_ITEMS) -> list[dict]:
    """List builds for a branch and archive their retried-job logs.

    A failure stops the branch and returns the builds archived so far.
    """
    archived: list[dict] = []
    try:
        for build in azdo_api.list_builds(branch_name, top=max_items):
            logger.info(
                "Get Build logs: %s %s %s %s",
                build.get("id"), build.get("buildNumber"), build.get("status"), build.get("result"),
            )
            files = timeline.save_build_logs(build["id"], base_path)
            summary = azdo_api.prune_build(build)
            summary["archived_files"] = files
            archived.append(summary)
    except Exception:
        logger.exception("Error getting builds for branch %s", branch_name)
    return archived


def _build_model(settings: config.Settings, branch_name: str, build: dict,
                 report: dict | None, build_timeline: dict | None) -> dict:
    return {
        "url": settings.url,
        "branch_name": branch_name,
        "started_at": build.get("startTime"),
        "status": build.get("status"),
        "result": build.get("result"),
        "build": azdo_api.prune_build(build),
        "report": report,
        "timeline": azdo_api.prune_timeline(build_timeline),
    }


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
def get_builds(branch: str = "", count: int = 1) -> str:
    """Get build information from Azure DevOps for a particular branch.
    Returns a JSON array with the newest completed build(s): status, result,
    report and a pruned timeline of stages/jobs/tasks.

    Args:
        branch: The name of the branch to get details for (e.g. 'main' or
            'refs/heads/main'). Defaults to main.
        count: How many of the newest builds to return with details (default 1, max 10).
    """
    branch_name = azdo_api.normalize_branch_name(branch)
    logger.info("get_builds: %s", branch_name)

    try:
        settings = config.get_settings()
    except config.ConfigurationError as exc:
        return _handle_error(exc, "get_builds")

    builds = _get_builds_without_logs(branch_name)
    if not builds:
        logger.warning("No builds found for branch %s", branch_name)
        return _to_json([])

    logger.info("Builds found: %d for %s", len(builds), branch_name)

    count = max(1, min(count, _MAX_DETAILED_BUILDS))
    models = []
    try:
        with ThreadPoolExecutor(max_workers=2) as executor:
            for build in builds[:count]:
                report_future = executor.submit(azdo_api.get_build_report, build["id"])
                timeline_future = executor.submit(azdo_api.get_build_timeline, build["id"])
                wait([report_future, timeline_future])
                models.append(_build_model(
                    settings, branch_name, build,
                    report_future.result(), timeline_future.result(),
                ))
    except Exception as exc:
        return _handle_error(exc, "get_builds")

    return _to_json(models)


@mcp.tool
def get_build_logs(build_id: int) -> str:
    """List the job logs of a build: task name, attempt, result, state, error
    count and log id, with an error excerpt for failed jobs. Raw log text is
    not included; use get_job_log for that.

    Args:
        build_id: Azure DevOps build id (from get_builds).
    """
    try:
        logs = timeline.collect_build_logs(build_id)
    except Exception as exc:
        return _handle_error(exc, "get_build_logs")

    records = []
    for log in logs:
        content = log.pop("content", "")
        if log.get("result") in ("failed", "canceled") or (log.get("error_count") or 0) > 0:
            log["error_excerpt"] = log_parser.get_error_log(content, max_lines=60)
        records.append(log)
    return _to_json(records)


@mcp.tool
def get_job_log(build_id: int, log_id: int, errors_only: bool = True) -> str:
    """Read one build log. By default returns only the errors (CRITICAL > ERROR > WARNING)
    with surrounding context; set errors_only=false for the raw tail of the log.

    Args:
        build_id: Azure DevOps build id.
        log_id: Log id (from get_build_logs).
        errors_only: Extract errors instead of returning the tail.
    """
    try:
        text = azdo_api.get_build_log(build_id, log_id)
    except Exception as exc:
        return _handle_error(exc, "get_job_log")

    if errors_only:
        return log_parser.get_error_log(text)
    return log_parser.truncate_tail(text)


@mcp.tool
def archive_build_logs(max_items: int = _MAX_ITEMS) -> str:
    """Save the logs of retried jobs for the known-good and known-bad branches
    to BasePath/Good and BasePath/Bad. Both branches are processed concurrently.
    Returns JSON with the builds processed per branch and the files written.

    Args:
        max_items: Maximum builds to process per branch (default 10).
    """
    try:
        settings = config.get_settings()
    except config.ConfigurationError as exc:
        return _handle_error(exc, "archive_build_logs")

    if not settings.base_path:
        return "[archive_build_logs] BasePath must be set in configuration."

    good_path = os.path.join(settings.base_path, "Good")
    bad_path = os.path.join(settings.base_path, "Bad")

    with ThreadPoolExecutor(max_workers=2) as executor:
        good_future = executor.submit(
            _get_builds_with_logs, settings.good_branch, good_path, max_items,
        )
        bad_future = executor.submit(
            _get_builds_with_logs, settings.bad_branch, bad_path, max_items,
        )
        wait([good_future, bad_future])

    return _to_json({"good": good_future.result(), "bad": bad_future.result()})


def main() -> None:
    configure_logging()
    logger.info("Starting server...")

    try:
        config.get_settings()
    except config.ConfigurationError as exc:
        logger.critical("Startup failed: %s", exc)
        sys.exit(1)

    transport = os.getenv("MCP_TRANSPORT", "stdio")
    try:
        if transport == "stdio":
            mcp.run(transport="stdio", show_banner=False)
        else:
            host = os.getenv("MCP_HOST", "127.0.0.1")
            port = int(os.getenv("MCP_PORT", "8000"))
            logger.info("Listening on http://%s:%d/mcp", host, port)
            mcp.run(transport=transport, host=host, port=port, show_banner=False)
    except KeyboardInterrupt:
        logger.info("Server stopped")
    except Exception:
        logger.exception("Server terminated unexpectedly")
        sys.exit(1)


if __name__ == "__main__":
    main()
