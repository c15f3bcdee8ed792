"""
Tests for the Dropbox files API client.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from eventtracker_backup.api.dropbox_api import (
    API_URL,
    CONTENT_URL,
    DropboxAPIError,
    DropboxAuthError,
    DropboxConflictError,
    DropboxFilesAPI,
    DropboxNetworkError,
    DropboxNotFoundError,
    RateLimitError,
    parse_timestamp,
)


def make_response(status=200, body=None, chunks=None):
    response = MagicMock()
    response.status_code = status
    if body is None:
        response.json.side_effect = ValueError("no json")
        response.text = ""
    else:
        response.json.return_value = body
        response.text = json.dumps(body)
    response.iter_content.return_value = chunks or []
    return response


def file_entry(name, modified="2024-01-20T10:30:00Z"):
    return {
        ".tag": "file",
        "name": name,
        "path_lower": f"/backups/{name}",
        "server_modified": modified,
    }


@pytest.fixture
def session():
    """Mock requests session."""
    return MagicMock()


@pytest.fixture
def api(session):
    """API client using the mock session."""
    return DropboxFilesAPI("token", session=session, initial_retry_delay=0.01)


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_zulu_suffix(self):
        """Test that a trailing Z is read as UTC."""
        assert parse_timestamp("2024-01-20T10:30:00Z") == datetime(
            2024, 1, 20, 10, 30, tzinfo=timezone.utc
        )

    def test_naive_is_utc(self):
        """Test that a timestamp without offset is treated as UTC."""
        assert parse_timestamp("2024-01-20T10:30:00").tzinfo == timezone.utc


class TestRequests:
    """Tests for the request shape of each operation."""

    def test_create_folder(self, api, session):
        """Test the create_folder call."""
        session.post.return_value = make_response(body={"metadata": {}})

        api.create_folder("/backups")

        args, kwargs = session.post.call_args
        assert args[0] == f"{API_URL}/files/create_folder_v2"
        assert kwargs["headers"]["Authorization"] == "Bearer token"
        assert json.loads(kwargs["data"]) == {"path": "/backups", "autorename": False}

    def test_upload(self, api, session, tmp_path):
        """Test that upload sends the file body and API argument header."""
        local = tmp_path / "eventtracker-1.etbak"
        local.write_bytes(b"payload")
        session.post.return_value = make_response(
            body=file_entry("eventtracker-1.etbak")
        )

        entry = api.upload(local, "/backups/eventtracker-1.etbak")

        args, kwargs = session.post.call_args
        assert args[0] == f"{CONTENT_URL}/files/upload"
        assert kwargs["data"] == b"payload"
        arg = json.loads(kwargs["headers"]["Dropbox-API-Arg"])
        assert arg["path"] == "/backups/eventtracker-1.etbak"
        assert arg["mode"] == "add"
        assert entry.name == "eventtracker-1.etbak"

    def test_list_all_follows_cursor(self, api, session):
        """Test that list_all pages through has_more."""
        session.post.side_effect = [
            make_response(
                body={
                    "entries": [file_entry("a.etbak")],
                    "cursor": "c1",
                    "has_more": True,
                }
            ),
            make_response(
                body={
                    "entries": [
                        file_entry("b.etbak"),
                        {".tag": "folder", "name": "sub"},
                    ],
                    "cursor": "c2",
                    "has_more": False,
                }
            ),
        ]

        entries = api.list_all("/backups")

        assert [e.name for e in entries] == ["a.etbak", "b.etbak"]
        second_call = session.post.call_args_list[1]
        assert second_call.args[0] == f"{API_URL}/files/list_folder/continue"
        assert json.loads(second_call.kwargs["data"]) == {"cursor": "c1"}

    def test_download_writes_chunks(self, api, session, tmp_path):
        """Test that download streams the body to disk."""
        response = make_response(chunks=[b"ab", b"", b"cd"])
        session.post.return_value = response
        target = tmp_path / "out" / "file.etbak"

        result = api.download("/backups/file.etbak", target)

        assert result == target
        assert target.read_bytes() == b"abcd"
        assert session.post.call_args.kwargs["stream"] is True
        response.close.assert_called_once()

    def test_interrupted_download_removes_partial_file(self, api, session, tmp_path):
        """Test that a dropped connection leaves no partial archive behind."""

        def chunks(chunk_size):
            yield b"partial"
            raise requests.ConnectionError("reset")

        response = make_response()
        response.iter_content.side_effect = chunks
        session.post.return_value = response
        target = tmp_path / "out" / "file.etbak"

        with pytest.raises(DropboxNetworkError):
            api.download("/backups/file.etbak", target)

        assert not target.exists()
        response.close.assert_called_once()

    def test_delete(self, api, session):
        """Test the delete call."""
        session.post.return_value = make_response(body={"metadata": {}})
        api.delete("/backups/old.etbak")
        args, kwargs = session.post.call_args
        assert args[0] == f"{API_URL}/files/delete_v2"
        assert json.loads(kwargs["data"]) == {"path": "/backups/old.etbak"}


class TestErrorMapping:
    """Tests for response status translation."""

    @pytest.mark.parametrize(
        "status,summary,error",
        [
            (401, "expired_access_token/", DropboxAuthError),
            (403, "no_permission", DropboxAuthError),
            (404, "", DropboxNotFoundError),
            (409, "path/not_found/..", DropboxNotFoundError),
            (409, "path/conflict/folder/..", DropboxConflictError),
            (400, "bad request", DropboxAPIError),
        ],
    )
    def test_status_mapping(self, api, session, status, summary, error):
        """Test that each status maps to its exception type."""
        session.post.return_value = make_response(
            status, body={"error_summary": summary}
        )
        with pytest.raises(error) as exc_info:
            api.delete("/x")
        assert exc_info.value.status_code == status

    def test_connection_error(self, api, session):
        """Test that connection failures become DropboxNetworkError."""
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(DropboxNetworkError):
            api.list_folder("/backups")

    def test_timeout(self, api, session):
        """Test that timeouts become DropboxNetworkError."""
        session.post.side_effect = requests.Timeout("slow")
        with pytest.raises(DropboxNetworkError):
            api.list_folder("/backups")

    def test_invalid_json(self, api, session):
        """Test that a non-JSON success body is an API error."""
        session.post.return_value = make_response(200)
        with pytest.raises(DropboxAPIError, match="invalid JSON"):
            api.list_folder("/backups")


class TestRetry:
    """Tests for exponential backoff."""

    @patch("eventtracker_backup.api.dropbox_api.time.sleep")
    def test_retries_server_errors(self, mock_sleep, api, session):
        """Test that 5xx responses are retried until success."""
        session.post.side_effect = [
            make_response(503),
            make_response(500),
            make_response(body={"entries": [], "cursor": "", "has_more": False}),
        ]

        page = api.list_folder("/backups")

        assert page.entries == []
        assert session.post.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("eventtracker_backup.api.dropbox_api.time.sleep")
    def test_rate_limit_exhausted(self, mock_sleep, api, session):
        """Test that persistent 429 raises RateLimitError."""
        session.post.return_value = make_response(429)

        with pytest.raises(RateLimitError):
            api.list_folder("/backups")

        assert session.post.call_count == 3

    @patch("eventtracker_backup.api.dropbox_api.time.sleep")
    def test_backoff_is_capped(self, mock_sleep, session):
        """Test that the delay doubles up to max_retry_delay."""
        api = DropboxFilesAPI(
            "token",
            max_retries=5,
            initial_retry_delay=1.0,
            max_retry_delay=3.0,
            session=session,
        )
        session.post.return_value = make_response(500)

        with pytest.raises(DropboxAPIError):
            api.delete("/x")

        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0, 3.0, 3.0]

    @patch("eventtracker_backup.api.dropbox_api.time.sleep")
    def test_client_errors_not_retried(self, mock_sleep, api, session):
        """Test that 4xx responses fail immediately."""
        session.post.return_value = make_response(401, body={})
        with pytest.raises(DropboxAuthError):
            api.delete("/x")
        assert session.post.call_count == 1
        mock_sleep.assert_not_called()
