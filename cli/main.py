#!/usr/bin/env python3
"""
vodpack CLI - upload, list, inspect and delete videos through the API.
"""

import argparse
import os
import sys
from pathlib import Path

import httpx
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from api.errors import truncate_error
from config import (
    API_PORT,
    API_SECRET,
    API_URL_PREFIX,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_UPLOAD_SIZE,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VODPACK_API_TIMEOUT", "30"))

# Uploads block until transcoding finishes, so allow plenty of time
UPLOAD_TIMEOUT = int(os.getenv("VODPACK_UPLOAD_TIMEOUT", "3600"))

_default_api_url = f"http://localhost:{API_PORT}"
API_BASE = os.getenv("VODPACK_API_URL", _default_api_url).rstrip("/") + API_URL_PREFIX

# Content types the server accepts, keyed by file extension
VIDEO_CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
}


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        """Read from the file, advancing progress by the bytes actually read."""
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()

    def close(self):
        """The underlying file is managed by the caller."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Args:
        response: httpx.Response object
        default_error: Default error message if response has no error detail

    Returns:
        Parsed JSON data if successful

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            body = response.json()
            detail = body.get("error") or body.get("detail") or response.text
        except (ValueError, AttributeError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def validate_file(file_path: Path, max_size: int = MAX_UPLOAD_SIZE) -> int:
    """
    Validate a local video file before uploading it.

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If the file is missing, unreadable, empty, too large, or of an unsupported type
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    if file_path.suffix.lower() not in VIDEO_CONTENT_TYPES:
        allowed = ", ".join(sorted(VIDEO_CONTENT_TYPES))
        raise CLIError(f"Unsupported file type '{file_path.suffix}'. Allowed: {allowed}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    if file_size > max_size:
        max_size_mb = max_size / (1024 * 1024)
        file_size_mb = file_size / (1024 * 1024)
        raise CLIError(f"File too large ({file_size_mb:.1f} MB). Maximum upload size is {max_size_mb:.0f} MB")

    return file_size


def get_api_headers() -> dict:
    """Get headers for mutating API requests."""
    headers = {}
    if API_SECRET:
        headers["X-API-Secret"] = API_SECRET
    return headers


def handle_auth_error(response) -> None:
    """Exit with a helpful message on 401/403 responses."""
    if response.status_code == 401:
        print("Error: Authentication required.")
        print("The API requires a secret. Set the VODPACK_API_SECRET environment variable.")
        sys.exit(1)
    elif response.status_code == 403:
        print("Error: Authentication failed - invalid secret.")
        print("Check that VODPACK_API_SECRET matches the server configuration.")
        sys.exit(1)


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(int(seconds or 0), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def run_command(func):
    """Run a command body, turning connection and API errors into exit code 1."""
    try:
        func()
    except httpx.ConnectError:
        print(f"Error: Could not connect to API at {API_BASE}")
        print("Make sure the server is running.")
        sys.exit(1)
    except httpx.TimeoutException:
        print(f"Error: Request to {API_BASE} timed out")
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_upload(args):
    """Upload a video and wait for it to be processed."""

    def _upload():
        file_path = Path(args.file)
        file_size = validate_file(file_path)
        content_type = VIDEO_CONTENT_TYPES[file_path.suffix.lower()]

        data = {}
        if args.title:
            data["title"] = args.title
        if args.description:
            data["description"] = args.description

        print(f"Uploading: {file_path.name}")

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            FileSizeColumn(),
            TextColumn("/"),
            TotalFileSizeColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
        ) as progress:
            task_id = progress.add_task("Uploading...", total=file_size)

            with open(file_path, "rb") as f:
                wrapped_file = ProgressFileWrapper(f, progress, task_id)
                files = {"video": (file_path.name, wrapped_file, content_type)}

                with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                    response = client.post(
                        f"{API_BASE}/upload", files=files, data=data, headers=get_api_headers()
                    )

        handle_auth_error(response)
        result = safe_json_response(response)
        video = result["video"]
        print(result.get("message", "Upload complete."))
        print(f"  ID: {video['id']}")
        print(f"  Title: {video['title']}")
        print(f"  Renditions: {', '.join(r['label'] for r in video['renditions']) or '-'}")
        if video.get("hls_playlist"):
            print(f"  Playlist: {video['hls_playlist']}")

    run_command(_upload)


def cmd_list(args):
    """List videos."""

    def _list():
        response = httpx.get(API_BASE, timeout=DEFAULT_API_TIMEOUT)
        result = safe_json_response(response)
        videos_list = result.get("videos", [])

        if not videos_list:
            print("No videos found.")
            return

        print(f"{'ID':<34} {'Status':<12} {'Length':<9} {'Title':<40}")
        print("-" * 97)
        for v in videos_list:
            title = v["title"][:38] + ".." if len(v["title"]) > 40 else v["title"]
            print(f"{v['id']:<34} {v['status']:<12} {format_duration(v['duration']):<9} {title:<40}")
        print(f"\n{result.get('count', len(videos_list))} video(s)")

    run_command(_list)


def cmd_show(args):
    """Show one video."""

    def _show():
        response = httpx.get(f"{API_BASE}/{args.video_id}", timeout=DEFAULT_API_TIMEOUT)
        video = safe_json_response(response)["video"]
        print(f"ID:          {video['id']}")
        print(f"Title:       {video['title']}")
        if video.get("description"):
            print(f"Description: {video['description']}")
        print(f"Status:      {video['status']}")
        print(f"Duration:    {format_duration(video['duration'])}")
        print(f"File:        {video['original_filename']} ({video['size_bytes']} bytes, {video['mime_type']})")
        print(f"Created:     {video['created_at']}")
        if video.get("hls_playlist"):
            print(f"Playlist:    {video['hls_playlist']}")
        for r in video.get("renditions", []):
            print(f"  {r['label']:<8} video {r['video_bitrate'] // 1000}k  audio {r['audio_bitrate'] // 1000}k")

    run_command(_show)


def cmd_delete(args):
    """Delete a video."""

    def _delete():
        response = httpx.delete(f"{API_BASE}/{args.video_id}", headers=get_api_headers(), timeout=DEFAULT_API_TIMEOUT)
        handle_auth_error(response)
        safe_json_response(response)
        print(f"Video {args.video_id} deleted.")

    run_command(_delete)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vodpack", description="vodpack CLI - Manage your video library")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload_parser = subparsers.add_parser("upload", help="Upload a video file")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.add_argument("-t", "--title", help="Video title (default: filename)")
    upload_parser.add_argument("-d", "--description", help="Video description")
    upload_parser.set_defaults(func=cmd_upload)

    list_parser = subparsers.add_parser("list", help="List videos")
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser("show", help="Show video details")
    show_parser.add_argument("video_id", help="Video ID")
    show_parser.set_defaults(func=cmd_show)

    del_parser = subparsers.add_parser("delete", help="Delete a video")
    del_parser.add_argument("video_id", help="Video ID to delete")
    del_parser.set_defaults(func=cmd_delete)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
