"""
Walk build timelines to collect and archive job logs.

A timeline is a flat list of records (Stage, Phase, Job, Task, Checkpoint)
linked by parentId.  Only Job records are interesting here: each carries one
log covering all of its tasks.  When a job is retried, the current record keeps
the latest attempt and lists the earlier ones under previousAttempts as
(attempt, timelineId, recordId) triples.  Each triple points into a separate
timeline that holds the superseded record and its log.

Archive layout (one directory per build):

    <base_path>/<build_id>/<record_id>_good_<log_id>_log.txt
    <base_path>/<build_id>/<record_id>_failed_<attempt>_<log_id>_log.txt
"""

from __future__ import annotations

import logging
import os
from typing import Iterator

from azdo import azdo_api, config

logger = logging.getLogger(__name__)

JOB_RECORD_TYPE = "Job"


def _log_record(record: dict) -> None:
    logger.debug(
        "Record: %s %s %s %s PreviousAttempts %d",
        record.get("type"), record.get("name"), record.get("id"),
        record.get("attempt"), len(record.get("previousAttempts") or []),
    )


def job_records(timeline: dict | None) -> Iterator[dict]:
    """Yield the Job records of a timeline, skipping every other record type."""
    if not timeline:
        return
    for record in timeline.get("records") or []:
        _log_record(record)
        if record.get("type") == JOB_RECORD_TYPE:
            yield record


def build_log_record(build_id: int, record: dict, content: str = "") -> dict:
    """Project a Job record and its log into a BuildLog record."""
    log = record.get("log") or {}
    return {
        "url": config.get_settings().url,
        "build_id": build_id,
        "log_id": log.get("id"),
        "log_url": log.get("url"),
        "log_type": log.get("type"),
        "error_count": record.get("errorCount"),
        "attempt": record.get("attempt"),
        "task_name": record.get("name"),
        "result": record.get("result"),
        "status": record.get("state"),
        "timeline_record": azdo_api.prune_timeline_record(record),
        "content": content,
    }


def collect_build_logs(build_id: int) -> list[dict]:
    """Fetch the log of every Job in the current timeline, one at a time."""
    timeline = azdo_api.get_build_timeline(build_id)
    logs: list[dict] = []
    for record in job_records(timeline):
        log = record.get("log")
        if not log:
            continue
        content = azdo_api.get_build_log(build_id, log["id"])
        logs.append(build_log_record(build_id, record, content))
    return logs


# ---------------------------------------------------------------------------
# Archival
# ---------------------------------------------------------------------------


def _save_log(build_id: int, log_id: int, build_dir: str, file_name: str) -> str:
    content = azdo_api.get_build_log(build_id, log_id)
    path = os.path.join(build_dir, file_name)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(content)
    return path


def _save_previous_attempt(
    build_id: int, build_dir: str, record_id: str, previous_attempt: dict,
) -> str | None:
    """Save the log of one superseded attempt.  Returns the path, or None when
    the earlier record has no log."""
    timeline_id = previous_attempt.get("timelineId")
    attempt_record_id = previous_attempt.get("recordId")
    logger.debug("Previous Attempt: %s %s", timeline_id, attempt_record_id)

    try:
        previous = azdo_api.get_build_timeline(build_id, timeline_id)
        failed = next(
            (r for r in (previous or {}).get("records") or []
             if r.get("id") == attempt_record_id),
            None,
        )
        if failed is None or not failed.get("log"):
            return None
        log_id = failed["log"]["id"]
        file_name = f"{record_id}_failed_{failed.get('attempt')}_{log_id}_log.txt"
        return _save_log(build_id, log_id, build_dir, file_name)
    except Exception:
        logger.exception(
            "Failed to process previous attempt %s %s", timeline_id, attempt_record_id,
        )
        raise


def _save_record_logs(build_id: int, build_dir: str, record: dict) -> list[str]:
    os.makedirs(build_dir, exist_ok=True)

    previous_attempts = record.get("previousAttempts") or []
    if not previous_attempts:
        return []

    written: list[str] = []
    record_id = record.get("id")
    log = record.get("log")
    if log:
        written.append(
            _save_log(build_id, log["id"], build_dir, f"{record_id}_good_{log['id']}_log.txt")
        )

    logger.debug("Processing %d previous attempts for %s", len(previous_attempts), record_id)
    for previous_attempt in previous_attempts:
        path = _save_previous_attempt(build_id, build_dir, record_id, previous_attempt)
        if path:
            written.append(path)
    return written


def save_build_logs(build_id: int, base_path: str) -> list[str]:
    """Archive the logs of retried jobs in a build under base_path/<build_id>.

    Returns the paths written.  Jobs that ran once are not archived.
    """
    build_dir = os.path.join(base_path, str(build_id))
    timeline = azdo_api.get_build_timeline(build_id)
    written: list[str] = []
    for record in job_records(timeline):
        written.extend(_save_record_logs(build_id, build_dir, record))
    return written
