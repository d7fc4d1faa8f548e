"""
Error extraction for Azure Pipelines job logs.

A job log is the concatenation of its task logs.  The agent prefixes every
line with an ISO-8601 timestamp and marks structure with logging commands:

    2024-05-01T10:00:00.1234567Z ##[section]Starting: Run tests
    2024-05-01T10:00:03.0000000Z ##[error]Bash exited with code '1'.
    2024-05-01T10:00:03.0000000Z ##[warning]Retrying download

Strategy for get_error_log():
  1. Strip timestamps, classify every line (CRITICAL > ERROR > WARNING).
  2. Attribute each match to the nearest preceding "##[section]Starting:" step
     via a single-pass step index (bisect lookup).
  3. Merge overlapping context windows and collapse repeated messages.
  4. Fill the line budget in tier order; sections that do not fit are clipped.
  5. If nothing matched, fall back to the tail of the log.
"""

from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass, field

MAX_LINES = 200
CONTEXT_LINES = 5
LOG_TAIL_LINES = 10
MIN_CLIP_LINES = 3

TIER_CRITICAL = "CRITICAL"
TIER_ERROR = "ERROR"
TIER_WARNING = "WARNING"

_TIER_RANK = {TIER_CRITICAL: 0, TIER_ERROR: 1, TIER_WARNING: 2}

_TIMESTAMP_RE = re.compile(r"^\ufeff?\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z\s?")
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

_CRITICAL_PATTERN = re.compile(
    r"ran longer than the maximum time|The operation was canceled"
    r"|exited with code '?-?[1-9]|exit code -?[1-9]"
    r"|lost communication with the server|OutOfMemory|out of memory"
    r"|core dumped|SIGKILL|SIGSEGV",
    re.IGNORECASE,
)

_ERROR_PATTERN = re.compile(
    r"##\[error\]|\bERROR\b|Exception\b|Traceback|npm ERR!|\bFAILED\b"
    r"|\berror (?:CS|MSB|TS|NU)\d+|:\s*error\s*:",
    re.IGNORECASE,
)

_WARNING_PATTERN = re.compile(r"##\[warning\]|\bWARN(?:ING)?\b", re.IGNORECASE)

_STEP_PATTERN = re.compile(r"##\[section\]Starting:\s*(.+)")


@dataclass
class MatchedSection:
    tier: str
    start: int
    end: int
    step: str
    keys: list[str] = field(default_factory=list)
    repeat_count: int = 1

    @property
    def fingerprint(self) -> str:
        first = self.keys[0] if self.keys else ""
        return f"{self.tier}|{self.step}|{first[:100]}"


def strip_timestamp(line: str) -> str:
    return _TIMESTAMP_RE.sub("", _ANSI_RE.sub("", line), count=1)


def classify_line(line: str) -> str | None:
    if _CRITICAL_PATTERN.search(line):
        return TIER_CRITICAL
    if _ERROR_PATTERN.search(line):
        return TIER_ERROR
    if _WARNING_PATTERN.search(line):
        return TIER_WARNING
    return None


def build_step_index(lines: list[str]) -> list[tuple[int, str]]:
    """Scan lines once and return sorted (line_idx, step_name) pairs."""
    index: list[tuple[int, str]] = []
    for i, line in enumerate(lines):
        m = _STEP_PATTERN.search(line)
        if m:
            index.append((i, m.group(1).strip()))
    return index


def resolve_step(step_index: list[tuple[int, str]], line_idx: int) -> str:
    positions = [s[0] for s in step_index]
    pos = bisect_right(positions, line_idx) - 1
    return step_index[pos][1] if pos >= 0 else ""


def _scan(lines: list[str], step_index: list[tuple[int, str]]) -> list[MatchedSection]:
    merged: list[MatchedSection] = []
    for idx, line in enumerate(lines):
        tier = classify_line(line)
        if not tier:
            continue
        start = max(0, idx - CONTEXT_LINES)
        end = min(len(lines) - 1, idx + CONTEXT_LINES)
        key = line.strip()
        if merged and start <= merged[-1].end + 1:
            prev = merged[-1]
            prev.end = max(prev.end, end)
            if key not in prev.keys:
                prev.keys.append(key)
            if _TIER_RANK[tier] < _TIER_RANK[prev.tier]:
                prev.tier = tier
        else:
            merged.append(MatchedSection(
                tier=tier, start=start, end=end,
                step=resolve_step(step_index, idx), keys=[key],
            ))
    return merged


def _deduplicate(sections: list[MatchedSection]) -> list[MatchedSection]:
    seen: dict[str, MatchedSection] = {}
    unique: list[MatchedSection] = []
    for section in sections:
        fp = section.fingerprint
        if fp in seen:
            seen[fp].repeat_count += 1
        else:
            seen[fp] = section
            unique.append(section)
    return unique


def _format_section(section: MatchedSection, lines: list[str], max_lines: int) -> list[str]:
    step_tag = f' | Step: "{section.step}"' if section.step else ""
    repeat_tag = (
        f" [repeated {section.repeat_count - 1} more times]"
        if section.repeat_count > 1 else ""
    )
    out = [f"--- {section.tier} near line {section.start + 1}{step_tag}{repeat_tag} ---"]
    snippet = lines[section.start: section.end + 1]
    available = max_lines - 1
    if len(snippet) > available:
        head = max(1, available - 1)
        omitted = len(snippet) - head
        snippet = snippet[:head] + [f"    [...{omitted} lines omitted...]"]
    return out + snippet


def truncate_tail(text: str, max_lines: int = MAX_LINES) -> str:
    """Return the last ``max_lines`` lines of text with a truncation notice."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    notice = f"[Log truncated: showing last {max_lines} of {len(lines)} lines]\n"
    return notice + "\n".join(lines[-max_lines:])


def get_error_log(text: str, max_lines: int = MAX_LINES) -> str:
    """Priority-budgeted error extraction from a job log."""
    if not text.strip():
        return "[Log is empty]"

    lines = [strip_timestamp(line) for line in text.splitlines()]
    sections = _deduplicate(_scan(lines, build_step_index(lines)))

    if not sections:
        return (
            f"[No error patterns matched. Showing last {max_lines} lines of raw log]\n\n"
            + truncate_tail("\n".join(lines), max_lines)
        )

    counts = {tier: sum(1 for s in sections if s.tier == tier) for tier in _TIER_RANK}
    out = [
        f"[Log analysis: {len(lines)} total lines | "
        f"{counts[TIER_CRITICAL]} critical, {counts[TIER_ERROR]} error, "
        f"{counts[TIER_WARNING]} warning]",
        "",
    ]
    tail_size = min(LOG_TAIL_LINES, max(0, max_lines - len(out) - MIN_CLIP_LINES - 2))
    tail = lines[-tail_size:] if tail_size else []
    budget = max_lines - len(out) - len(tail) - 1

    for tier in (TIER_CRITICAL, TIER_ERROR, TIER_WARNING):
        for section in sections:
            if section.tier != tier:
                continue
            if budget < MIN_CLIP_LINES + 1:
                break
            formatted = _format_section(section, lines, budget - 1)
            out.extend(formatted)
            out.append("")
            budget -= len(formatted) + 1

    out.append(f"--- Log end (last {len(tail)} lines) ---")
    out.extend(tail)
    return "\n".join(out)
