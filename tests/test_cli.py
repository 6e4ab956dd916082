"""
Tests for the vodpack CLI (cli/main.py).
"""

from unittest import mock

import httpx
import pytest

from cli.main import (
    CLIError,
    ProgressFileWrapper,
    build_parser,
    format_duration,
    safe_json_response,
    validate_file,
)


def _video(asset_id="a" * 32, title="Test Video", status="ready", **overrides):
    video = {
        "id": asset_id,
        "title": title,
        "description": "",
        "original_filename": "clip.mp4",
        "size_bytes": 2048,
        "mime_type": "video/mp4",
        "duration": 75,
        "status": status,
        "source_path": None,
        "created_at": "2026-10-18T12:00:00Z",
        "renditions": [
            {"label": "360p", "video_bitrate": 800000, "audio_bitrate": 96000, "playlist_path": "360p/360p.m3u8"},
        ],
        "hls_playlist": f"/api/videos/stream/{asset_id}/master.m3u8",
        "stream_url": f"/api/videos/stream/{asset_id}/",
    }
    video.update(overrides)
    return video


def _response(payload, status_code=200):
    response = mock.Mock()
    response.is_success = 200 <= status_code < 300
    response.status_code = status_code
    response.json.return_value = payload
    response.text = str(payload)
    return response


class TestProgressFileWrapper:
    """Test the ProgressFileWrapper class for upload progress tracking."""

    def test_wrapper_reads_and_updates_progress(self, tmp_path):
        """Reads advance the progress bar by the bytes read."""
        test_file = tmp_path / "clip.mp4"
        test_file.write_bytes(b"Hello, World!")
        mock_progress = mock.Mock()

        with open(test_file, "rb") as f:
            wrapper = ProgressFileWrapper(f, mock_progress, 1)
            assert wrapper.read(5) == b"Hello"
            mock_progress.update.assert_called_once_with(1, advance=5)

    def test_wrapper_empty_read_at_eof(self, tmp_path):
        """No progress update for an empty read."""
        test_file = tmp_path / "clip.mp4"
        test_file.write_bytes(b"abc")
        mock_progress = mock.Mock()

        with open(test_file, "rb") as f:
            wrapper = ProgressFileWrapper(f, mock_progress, 1)
            wrapper.read()
            mock_progress.reset_mock()
            assert wrapper.read(10) == b""
            mock_progress.update.assert_not_called()

    def test_wrapper_forwards_seek_and_tell(self, tmp_path):
        test_file = tmp_path / "clip.mp4"
        test_file.write_bytes(b"0123456789")

        with open(test_file, "rb") as f:
            wrapper = ProgressFileWrapper(f, mock.Mock(), 1)
            wrapper.seek(5)
            assert wrapper.tell() == 5
            assert wrapper.read(5) == b"56789"


class TestSafeJsonResponse:
    """Test the safe_json_response function."""

    def test_successful_json_response(self):
        assert safe_json_response(_response({"success": True})) == {"success": True}

    def test_error_response_uses_error_field(self):
        """The API's {"success": false, "error": ...} body is surfaced."""
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(_response({"success": False, "error": "Video not found"}, status_code=404))
        assert "API error (404)" in str(exc_info.value)
        assert "Video not found" in str(exc_info.value)

    def test_error_response_uses_detail_field(self):
        """FastAPI validation errors use a detail field."""
        with pytest.raises(CLIError) as exc_info:
            safe_json_response(_response({"detail": "Field required"}, status_code=422))
        assert "Field required" in str(exc_info.value)

    def test_error_response_non_json(self):
        response = mock.Mock()
        response.is_success = False
        response.status_code = 502
        response.json.side_effect = ValueError("Invalid JSON")
        response.text = "<html><body>Bad Gateway</body></html>"

        with pytest.raises(CLIError) as exc_info:
            safe_json_response(response)
        assert "Bad Gateway" in str(exc_info.value)

    def test_error_response_long_text_truncated(self):
        """Long non-JSON error bodies are truncated."""
        response = mock.Mock()
        response.is_success = False
        response.status_code = 500
        response.json.side_effect = ValueError("Invalid JSON")
        response.text = "x" * 600

        with pytest.raises(CLIError) as exc_info:
            safe_json_response(response)
        error_detail = str(exc_info.value).split(": ", 1)[1]
        assert len(error_detail) == 500
        assert error_detail.endswith("...")

    def test_successful_non_json_response_raises_error(self):
        response = mock.Mock()
        response.is_success = True
        response.json.side_effect = ValueError("Invalid JSON")
        response.text = "Not JSON content"

        with pytest.raises(CLIError, match="Invalid JSON response"):
            safe_json_response(response)


class TestValidateFile:
    """Test the validate_file function."""

    def test_valid_file(self, tmp_path):
        video = tmp_path / "clip.mp4"
        video.write_bytes(b"x" * 100)
        assert validate_file(video) == 100

    def test_file_not_found(self, tmp_path):
        with pytest.raises(CLIError, match="File not found"):
            validate_file(tmp_path / "missing.mp4")

    def test_path_is_directory(self, tmp_path):
        directory = tmp_path / "clip.mp4"
        directory.mkdir()
        with pytest.raises(CLIError, match="not a file"):
            validate_file(directory)

    def test_unsupported_extension(self, tmp_path):
        document = tmp_path / "notes.txt"
        document.write_text("hello")
        with pytest.raises(CLIError, match="Unsupported file type"):
            validate_file(document)

    def test_empty_file(self, tmp_path):
        video = tmp_path / "clip.mkv"
        video.write_bytes(b"")
        with pytest.raises(CLIError, match="empty"):
            validate_file(video)

    def test_file_too_large(self, tmp_path):
        video = tmp_path / "clip.webm"
        video.write_bytes(b"x" * 2048)
        with pytest.raises(CLIError, match="File too large"):
            validate_file(video, max_size=1024)


class TestFormatDuration:
    """Test format_duration."""

    @pytest.mark.parametrize("seconds,expected", [(0, "0:00"), (75, "1:15"), (3725, "1:02:05"), (None, "0:00")])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestCommands:
    """Tests for the CLI commands with the HTTP layer mocked."""

    def test_list_videos(self, capsys):
        from cli.main import cmd_list

        payload = {"success": True, "count": 2, "videos": [_video(), _video("b" * 32, "Fallback", "unprocessed")]}

        with mock.patch("httpx.get", return_value=_response(payload)):
            cmd_list(mock.Mock())

        out = capsys.readouterr().out
        assert "Test Video" in out
        assert "unprocessed" in out
        assert "1:15" in out
        assert "2 video(s)" in out

    def test_list_videos_empty(self, capsys):
        from cli.main import cmd_list

        with mock.patch("httpx.get", return_value=_response({"success": True, "count": 0, "videos": []})):
            cmd_list(mock.Mock())

        assert "No videos found" in capsys.readouterr().out

    def test_list_connection_error_exits(self, capsys):
        from cli.main import cmd_list

        with mock.patch("httpx.get", side_effect=httpx.ConnectError("Connection refused")):
            with pytest.raises(SystemExit) as exc_info:
                cmd_list(mock.Mock())
        assert exc_info.value.code == 1
        assert "Could not connect" in capsys.readouterr().out

    def test_list_timeout_exits(self, capsys):
        from cli.main import cmd_list

        with mock.patch("httpx.get", side_effect=httpx.TimeoutException("Timeout")):
            with pytest.raises(SystemExit):
                cmd_list(mock.Mock())
        assert "timed out" in capsys.readouterr().out

    def test_show_video(self, capsys):
        from cli.main import cmd_show

        args = mock.Mock(video_id="a" * 32)
        with mock.patch("httpx.get", return_value=_response({"success": True, "video": _video()})) as mock_get:
            cmd_show(args)

        assert mock_get.call_args[0][0].endswith("/" + "a" * 32)
        out = capsys.readouterr().out
        assert "master.m3u8" in out
        assert "360p" in out
        assert "800k" in out

    def test_show_missing_video_exits(self, capsys):
        from cli.main import cmd_show

        response = _response({"success": False, "error": "Video not found"}, status_code=404)
        with mock.patch("httpx.get", return_value=response):
            with pytest.raises(SystemExit):
                cmd_show(mock.Mock(video_id="f" * 32))
        assert "Video not found" in capsys.readouterr().out

    def test_delete_auth_required(self, capsys):
        from cli.main import cmd_delete

        with mock.patch("httpx.delete", return_value=_response({"success": False}, status_code=401)):
            with pytest.raises(SystemExit):
                cmd_delete(mock.Mock(video_id="a" * 32))
        assert "Authentication required" in capsys.readouterr().out

    def test_upload_posts_multipart(self, tmp_path, capsys):
        """The file is sent under the 'video' field with its content type."""
        from cli.main import cmd_upload

        video = tmp_path / "holiday.mov"
        video.write_bytes(b"x" * 64)
        args = mock.Mock(file=str(video), title="Holiday", description=None)
        payload = {"success": True, "message": "Video uploaded and processed successfully", "video": _video()}

        with mock.patch("cli.main.httpx.Client") as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.post.return_value = _response(payload, status_code=201)
            cmd_upload(args)

        call = client.post.call_args
        assert call[0][0].endswith("/upload")
        filename, _, content_type = call[1]["files"]["video"]
        assert filename == "holiday.mov"
        assert content_type == "video/quicktime"
        assert call[1]["data"] == {"title": "Holiday"}
        assert "Video uploaded and processed successfully" in capsys.readouterr().out


class TestParser:
    """Tests for argument parsing."""

    def test_upload_arguments(self):
        args = build_parser().parse_args(["upload", "clip.mp4", "-t", "Title", "-d", "Desc"])
        assert args.file == "clip.mp4"
        assert args.title == "Title"
        assert args.description == "Desc"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
