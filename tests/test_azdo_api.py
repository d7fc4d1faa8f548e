"""Tests for azdo.azdo_api: request building, retry, pagination and projections."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from azdo.azdo_api import (
    _MAX_BUILDS,
    _get,
    get_build_log,
    get_build_report,
    get_build_timeline,
    list_builds,
    normalize_branch_name,
    prune_build,
    prune_timeline,
    prune_timeline_record,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_response(json_data: dict | None = None, status_code: int = 200,
                   headers: dict | None = None, content: bytes = b"{}") -> MagicMock:
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.content = content
    if json_data is not None:
        resp.json.return_value = json_data
    resp.raise_for_status.return_value = None
    return resp


def _raise_http(status: int):
    def _side_effect(*args, **kwargs):
        resp = MagicMock(spec=requests.Response)
        resp.status_code = status
        raise requests.HTTPError(response=resp)
    return _side_effect


# ---------------------------------------------------------------------------
# normalize_branch_name
# ---------------------------------------------------------------------------


class TestNormalizeBranchName:
    def test_short_name_prefixed(self):
        assert normalize_branch_name("main") == "refs/heads/main"

    def test_nested_short_name_prefixed(self):
        assert normalize_branch_name("feature/login") == "refs/heads/feature/login"

    def test_full_ref_unchanged(self):
        assert normalize_branch_name("refs/heads/release/1.2") == "refs/heads/release/1.2"

    def test_pull_request_ref_unchanged(self):
        assert normalize_branch_name("refs/pull/17/merge") == "refs/pull/17/merge"

    @pytest.mark.parametrize("value", ["", "   ", None])
    def test_empty_defaults_to_main(self, value):
        assert normalize_branch_name(value) == "refs/heads/main"


# ---------------------------------------------------------------------------
# _get
# ---------------------------------------------------------------------------


class TestGet:
    @patch("azdo.azdo_api.requests.get")
    def test_builds_project_url_with_auth(self, mock_get):
        mock_get.return_value = _mock_response({})
        _get("/builds", params={"$top": 1})
        args, kwargs = mock_get.call_args
        assert args[0] == "https://dev.azure.com/contoso/Fabrikam%20Web/_apis/build/builds"
        assert kwargs["auth"] == ("", "secret-pat")
        assert kwargs["params"] == {"$top": 1, "api-version": "7.1"}

    @patch("azdo.azdo_api.time.sleep")
    @patch("azdo.azdo_api.requests.get")
    def test_retries_transient_status(self, mock_get, mock_sleep):
        mock_get.side_effect = [_mock_response(status_code=503), _mock_response({"ok": 1})]
        resp = _get("/builds")
        assert resp.json() == {"ok": 1}
        assert mock_get.call_count == 2
        mock_sleep.assert_called_once_with(1)

    @patch("azdo.azdo_api.time.sleep")
    @patch("azdo.azdo_api.requests.get")
    def test_connection_error_after_retries(self, mock_get, mock_sleep):
        mock_get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(ConnectionError, match="Cannot reach Azure DevOps"):
            _get("/builds")
        assert mock_get.call_count == 3

    @patch("azdo.azdo_api.time.sleep")
    @patch("azdo.azdo_api.requests.get")
    def test_timeout_after_retries(self, mock_get, mock_sleep):
        mock_get.side_effect = requests.Timeout()
        with pytest.raises(TimeoutError):
            _get("/builds")

    @patch("azdo.azdo_api.requests.get")
    def test_sign_in_page_raises_permission_error(self, mock_get):
        mock_get.return_value = _mock_response(status_code=203)
        with pytest.raises(PermissionError, match="203"):
            _get("/builds")

    @patch("azdo.azdo_api.requests.get")
    def test_http_error_propagates(self, mock_get):
        resp = _mock_response(status_code=401)
        resp.raise_for_status.side_effect = requests.HTTPError(response=resp)
        mock_get.return_value = resp
        with pytest.raises(requests.HTTPError):
            _get("/builds")


# ---------------------------------------------------------------------------
# list_builds
# ---------------------------------------------------------------------------


class TestListBuilds:
    @patch("azdo.azdo_api._get")
    def test_query_parameters(self, mock_get):
        mock_get.return_value = _mock_response({"count": 1, "value": [{"id": 1}]})
        result = list_builds("main", top=5)
        assert result == [{"id": 1}]
        path = mock_get.call_args[0][0]
        params = mock_get.call_args[1]["params"]
        assert path == "/builds"
        assert params["definitions"] == 42
        assert params["statusFilter"] == "completed"
        assert params["branchName"] == "refs/heads/main"
        assert params["$top"] == 5

    @patch("azdo.azdo_api._get")
    def test_zero_builds_returns_empty(self, mock_get):
        mock_get.return_value = _mock_response({"count": 0, "value": []})
        assert list_builds("no-such-branch") == []

    @patch("azdo.azdo_api._get")
    def test_follows_continuation_token(self, mock_get):
        seen_tokens = []

        def _side_effect(path, params):
            seen_tokens.append(params.get("continuationToken"))
            if len(seen_tokens) == 1:
                return _mock_response(
                    {"value": [{"id": 3}, {"id": 2}]},
                    headers={"x-ms-continuationtoken": "abc"},
                )
            return _mock_response({"value": [{"id": 1}, {"id": 0}]})

        mock_get.side_effect = _side_effect
        result = list_builds("main", top=3)
        assert [b["id"] for b in result] == [3, 2, 1]
        assert seen_tokens == [None, "abc"]

    @patch("azdo.azdo_api._get")
    def test_stops_when_top_reached(self, mock_get):
        mock_get.return_value = _mock_response(
            {"value": [{"id": 2}, {"id": 1}]},
            headers={"x-ms-continuationtoken": "more"},
        )
        result = list_builds("main", top=2)
        assert len(result) == 2
        assert mock_get.call_count == 1

    @patch("azdo.azdo_api._get")
    def test_top_clamped(self, mock_get):
        mock_get.return_value = _mock_response({"value": []})
        list_builds("main", top=10_000)
        assert mock_get.call_args[1]["params"]["$top"] == _MAX_BUILDS
        list_builds("main", top=0)
        assert mock_get.call_args[1]["params"]["$top"] == 1


# ---------------------------------------------------------------------------
# Report / timeline / log
# ---------------------------------------------------------------------------


class TestGetBuildReport:
    @patch("azdo.azdo_api._get")
    def test_report(self, mock_get):
        mock_get.return_value = _mock_response(
            {"buildId": 9, "type": "html", "content": "<p>ok</p>"}
        )
        assert get_build_report(9) == {"build_id": 9, "type": "html", "content": "<p>ok</p>"}
        assert mock_get.call_args[1]["api_version"] == "7.1-preview.2"

    @patch("azdo.azdo_api._get")
    def test_missing_report_returns_none(self, mock_get):
        mock_get.side_effect = _raise_http(404)
        assert get_build_report(9) is None

    @patch("azdo.azdo_api._get")
    def test_other_errors_raise(self, mock_get):
        mock_get.side_effect = _raise_http(500)
        with pytest.raises(requests.HTTPError):
            get_build_report(9)

    @patch("azdo.azdo_api._get")
    def test_large_report_truncated(self, mock_get):
        mock_get.return_value = _mock_response({"buildId": 9, "content": "x" * 100_000})
        report = get_build_report(9)
        assert report["content"].endswith("[REPORT TRUNCATED]")
        assert len(report["content"]) < 100_000


class TestGetBuildTimeline:
    @patch("azdo.azdo_api._get")
    def test_current_timeline(self, mock_get):
        mock_get.return_value = _mock_response({"id": "t1", "records": []})
        assert get_build_timeline(5) == {"id": "t1", "records": []}
        assert mock_get.call_args[0][0] == "/builds/5/timeline"

    @patch("azdo.azdo_api._get")
    def test_previous_attempt_timeline(self, mock_get):
        mock_get.return_value = _mock_response({"id": "t0", "records": []})
        get_build_timeline(5, "t0")
        assert mock_get.call_args[0][0] == "/builds/5/timeline/t0"

    @patch("azdo.azdo_api._get")
    def test_empty_body_returns_none(self, mock_get):
        mock_get.return_value = _mock_response(status_code=204, content=b"")
        assert get_build_timeline(5) is None

    @patch("azdo.azdo_api._get")
    def test_not_found_returns_none(self, mock_get):
        mock_get.side_effect = _raise_http(404)
        assert get_build_timeline(5) is None


class TestGetBuildLog:
    @patch("azdo.azdo_api._get")
    def test_streams_text(self, mock_get):
        resp = _mock_response()
        resp.iter_content.return_value = iter(["line 1\n", "line 2\n"])
        mock_get.return_value = resp
        assert get_build_log(5, 7) == "line 1\nline 2\n"
        assert mock_get.call_args[0][0] == "/builds/5/logs/7"
        assert mock_get.call_args[1]["stream"] is True
        resp.close.assert_called_once()

    @patch("azdo.azdo_api._MAX_LOG_BYTES", 10)
    @patch("azdo.azdo_api._get")
    def test_truncated_at_cap(self, mock_get):
        resp = _mock_response()
        resp.iter_content.return_value = iter(["a" * 8, "b" * 8, "z" * 8])
        mock_get.return_value = resp
        text = get_build_log(5, 7)
        assert "z" not in text
        assert text.startswith("a" * 8 + "b" * 8 + "\n[LOG TRUNCATED")
        assert text.endswith("[LOG TRUNCATED: exceeded 10 MB download limit]")

    @patch("azdo.azdo_api._MAX_LOG_BYTES", 4)
    @patch("azdo.azdo_api._get")
    def test_cap_counts_encoded_bytes(self, mock_get):
        resp = _mock_response()
        resp.iter_content.return_value = iter(["\u00e9\u00e9", "tail"])
        mock_get.return_value = resp
        text = get_build_log(5, 7)
        assert "tail" not in text
        assert text.startswith("\u00e9\u00e9\n[LOG TRUNCATED")

    @patch("azdo.azdo_api._get")
    def test_closed_when_stream_fails(self, mock_get):
        resp = _mock_response()
        resp.iter_content.side_effect = requests.ConnectionError("reset mid-stream")
        mock_get.return_value = resp
        with pytest.raises(requests.ConnectionError):
            get_build_log(5, 7)
        resp.close.assert_called_once()


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------


class TestProjections:
    def test_prune_build(self):
        build = {
            "id": 11, "buildNumber": "20240501.3", "status": "completed",
            "result": "failed", "sourceBranch": "refs/heads/main",
            "sourceVersion": "abc123", "reason": "individualCI",
            "requestedFor": {"displayName": "Ada"},
            "startTime": "2024-05-01T10:00:00Z",
            "_links": {"web": {"href": "https://dev.azure.com/x/_build/results?buildId=11"}},
            "definition": {"id": 42}, "logs": {"id": 0},
        }
        pruned = prune_build(build)
        assert pruned["id"] == 11
        assert pruned["build_number"] == "20240501.3"
        assert pruned["requested_for"] == "Ada"
        assert pruned["web_url"].endswith("buildId=11")
        assert "definition" not in pruned

    def test_prune_timeline_record(self):
        record = {
            "id": "r1", "parentId": "p1", "type": "Job", "name": "Build",
            "state": "completed", "result": "failed", "attempt": 2,
            "errorCount": 3, "log": {"id": 8, "url": "u"},
            "previousAttempts": [{"attempt": 1, "timelineId": "t0", "recordId": "r0"}],
        }
        pruned = prune_timeline_record(record)
        assert pruned["log_id"] == 8
        assert pruned["error_count"] == 3
        assert pruned["warning_count"] == 0
        assert pruned["previous_attempts"] == 1

    def test_prune_timeline_none(self):
        assert prune_timeline(None) is None

    def test_prune_timeline(self):
        pruned = prune_timeline({"id": "t", "changeId": 4, "records": [{"id": "a"}, {"id": "b"}]})
        assert pruned["change_id"] == 4
        assert [r["id"] for r in pruned["records"]] == ["a", "b"]
