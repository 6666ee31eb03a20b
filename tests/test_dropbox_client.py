"""Tests for the Dropbox client against a fake Dropbox HTTP server."""

import sys
import os
import asyncio
import json

import pytest
from aiohttp import web
from aiohttp import test_utils

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from foldersync.api_clients import dropbox as dropbox_module
from foldersync.api_clients.base import (
    AuthenticationError, APIConnectionError, RateLimitError, RemoteAPIError, TAG_FILE, TAG_FOLDER
)
from foldersync.api_clients.dropbox import DropboxClient
from foldersync.auth.token_store import TokenStore
from foldersync.utils.retry import RetryPolicy


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeDropbox:
    """Just enough of the Dropbox API v2 to exercise the client."""

    def __init__(self):
        self.valid_token = "good-token"
        self.hits = {}
        self.responses = {}
        self.token_requests = []
        self.sessions = {}
        self.uploads = {}
        self.files = {"/photos/cat.jpg": b"x" * 150_000}

        self.app = web.Application()
        self.app.router.add_post("/oauth2/token", self.token)
        self.app.router.add_post("/2/{endpoint:.+}", self.dispatch)

    def queue(self, endpoint, *responses):
        """Canned responses served before the default handler for ``endpoint``."""
        self.responses.setdefault(endpoint, []).extend(responses)

    async def token(self, request):
        form = await request.post()
        self.token_requests.append(dict(form))
        if form.get("refresh_token") != "refresh-me":
            return web.json_response({"error": "invalid_grant"}, status=400)
        return web.json_response({"access_token": self.valid_token, "expires_in": 14400})

    async def dispatch(self, request):
        endpoint = request.match_info["endpoint"]
        self.hits[endpoint] = self.hits.get(endpoint, 0) + 1

        if request.headers.get("Authorization") != f"Bearer {self.valid_token}":
            return web.json_response({"error_summary": "expired_access_token/"}, status=401)

        canned = self.responses.get(endpoint)
        if canned:
            response = canned.pop(0)
            if callable(response):
                return await response(request)
            return response

        handler = getattr(self, "handle_" + endpoint.replace("/", "_"), None)
        if handler is None:
            return web.json_response({"error_summary": "unknown_endpoint/"}, status=400)
        return await handler(request)

    @staticmethod
    def api_arg(request):
        return json.loads(request.headers["Dropbox-API-Arg"])

    async def handle_users_get_current_account(self, request):
        return web.json_response({"email": "owner@example.com", "name": {"display_name": "Owner"}})

    async def handle_files_get_metadata(self, request):
        path = (await request.json())["path"]
        if path.lower() not in self.files:
            return web.json_response({"error_summary": "path/not_found/.."}, status=409)
        return web.json_response({
            ".tag": "file",
            "path_display": path,
            "path_lower": path.lower(),
            "server_modified": "2024-05-01T12:00:00Z",
            "size": len(self.files[path.lower()])
        })

    async def handle_files_list_folder(self, request):
        return web.json_response({
            "entries": [
                {".tag": "folder", "path_display": "/Root/Albums", "path_lower": "/root/albums"},
                {".tag": "file", "path_display": "/Root/a.jpg", "path_lower": "/root/a.jpg",
                 "server_modified": "2024-05-01T12:00:00Z", "size": 3},
            ],
            "cursor": "page-2",
            "has_more": True
        })

    async def handle_files_list_folder_continue(self, request):
        assert (await request.json())["cursor"] == "page-2"
        return web.json_response({
            "entries": [
                {".tag": "file", "path_display": "/Root/b.png", "path_lower": "/root/b.png",
                 "server_modified": "2024-05-02T08:30:00Z", "size": 4},
            ],
            "cursor": "page-3",
            "has_more": False
        })

    async def handle_files_create_folder_v2(self, request):
        path = (await request.json())["path"]
        return web.json_response({"metadata": {"path_display": path, "path_lower": path.lower()}})

    async def handle_files_delete_v2(self, request):
        path = (await request.json())["path"]
        self.files.pop(path.lower(), None)
        return web.json_response({"metadata": {".tag": "file", "path_display": path, "path_lower": path.lower()}})

    async def handle_files_move_v2(self, request):
        body = await request.json()
        assert body["autorename"] is True
        self.files[body["to_path"].lower()] = self.files.pop(body["from_path"].lower())
        return web.json_response({"metadata": self._file_metadata(body["to_path"], self.files[body["to_path"].lower()])})

    async def handle_files_upload(self, request):
        arg = self.api_arg(request)
        self.uploads[arg["path"]] = (await request.read(), arg)
        return web.json_response(self._file_metadata(arg["path"], self.uploads[arg["path"]][0]))

    async def handle_files_upload_session_start(self, request):
        session_id = f"session-{len(self.sessions) + 1}"
        self.sessions[session_id] = bytearray(await request.read())
        return web.json_response({"session_id": session_id})

    async def handle_files_upload_session_append_v2(self, request):
        cursor = self.api_arg(request)["cursor"]
        data = self.sessions[cursor["session_id"]]
        if cursor["offset"] != len(data):
            return web.json_response({"error_summary": "incorrect_offset/"}, status=409)
        data.extend(await request.read())
        return web.json_response(None)

    async def handle_files_upload_session_finish(self, request):
        arg = self.api_arg(request)
        data = bytes(self.sessions[arg["cursor"]["session_id"]])
        assert arg["cursor"]["offset"] == len(data)
        path = arg["commit"]["path"]
        self.uploads[path] = (data, arg["commit"])
        return web.json_response(self._file_metadata(path, data))

    async def handle_files_download(self, request):
        path = self.api_arg(request)["path"]
        response = web.StreamResponse()
        await response.prepare(request)
        body = self.files[path.lower()]
        for start in range(0, len(body), 10_000):
            await response.write(body[start:start + 10_000])
        await response.write_eof()
        return response

    @staticmethod
    def _file_metadata(path, data):
        return {
            ".tag": "file",
            "path_display": path,
            "path_lower": path.lower(),
            "server_modified": "2024-06-01T09:15:30Z",
            "size": len(data)
        }


@pytest.fixture
def fake():
    return FakeDropbox()


def make_client(server, access_token="good-token", refresh_token="", sleep=None, **kwargs):
    base_url = str(server.make_url("/"))
    return DropboxClient(
        token_store=TokenStore(access_token=access_token, refresh_token=refresh_token),
        app_key="key",
        app_secret="secret",
        api_base_url=base_url,
        content_base_url=base_url,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=2),
        sleep=sleep or SleepRecorder(),
        **kwargs
    )


class TestConnection:

    @pytest.mark.asyncio
    async def test_connected(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                assert await client.is_connected()

    @pytest.mark.asyncio
    async def test_no_token_skips_account_check(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server, access_token="") as client:
                assert not await client.is_connected()
        assert fake.hits == {}

    @pytest.mark.asyncio
    async def test_rejected_token_without_refresh(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server, access_token="stale") as client:
                assert not await client.is_connected()
        assert fake.token_requests == []

    @pytest.mark.asyncio
    async def test_connection_status(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                status = await client.get_connection_status()

        assert status["connected"]
        assert status["account_email"] == "owner@example.com"
        assert status["account_name"] == "Owner"
        assert status["has_access_token"] and not status["has_refresh_token"]
        assert status["error"] is None

    @pytest.mark.asyncio
    async def test_unreachable_host(self):
        sleep = SleepRecorder()
        client = DropboxClient(
            token_store=TokenStore(access_token="good-token"),
            api_base_url="http://127.0.0.1:1",
            content_base_url="http://127.0.0.1:1",
            sleep=sleep
        )
        try:
            with pytest.raises(APIConnectionError):
                await client.make_request("users/get_current_account")
            assert not await client.is_connected()
        finally:
            await client.close()
        assert sleep.delays == []


class TestRetries:

    @pytest.mark.asyncio
    async def test_rate_limit_waits_for_retry_after(self, fake):
        fake.queue("users/get_current_account", web.json_response({}, status=429, headers={"Retry-After": "3"}))
        sleep = SleepRecorder()

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server, sleep=sleep) as client:
                account = await client.make_request("users/get_current_account")

        assert account["email"] == "owner@example.com"
        assert sleep.delays == [3]
        assert fake.hits["users/get_current_account"] == 2

    @pytest.mark.asyncio
    async def test_rate_limit_without_header_uses_default(self, fake):
        fake.queue("users/get_current_account", *[web.json_response({}, status=429) for _ in range(3)])
        sleep = SleepRecorder()

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server, sleep=sleep) as client:
                with pytest.raises(RateLimitError):
                    await client.make_request("users/get_current_account")

        assert sleep.delays == [dropbox_module.DEFAULT_RETRY_AFTER] * 2
        assert fake.hits["users/get_current_account"] == 3

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once(self, fake, tmp_path):
        token_file = tmp_path / "tokens.json"

        async with test_utils.TestServer(fake.app) as server:
            client = make_client(server, access_token="expired", refresh_token="refresh-me")
            client.tokens.token_storage_path = token_file
            async with client:
                account = await client.make_request("users/get_current_account")

        assert account["name"]["display_name"] == "Owner"
        assert client.tokens.access_token == "good-token"
        assert client.tokens.refresh_token == "refresh-me"
        assert fake.token_requests == [{
            "grant_type": "refresh_token",
            "refresh_token": "refresh-me",
            "client_id": "key",
            "client_secret": "secret"
        }]
        stored = json.loads(token_file.read_text())
        assert stored["access_token"] == "good-token"
        assert stored["refresh_token"] == "refresh-me"

    @pytest.mark.asyncio
    async def test_failed_refresh_raises(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server, access_token="expired", refresh_token="revoked") as client:
                with pytest.raises(AuthenticationError):
                    await client.make_request("users/get_current_account")
        assert fake.hits["users/get_current_account"] == 1

    @pytest.mark.asyncio
    async def test_second_rejection_after_refresh_raises(self, fake):
        fake.queue("users/get_current_account", web.json_response({}, status=401))

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server, access_token="expired", refresh_token="refresh-me") as client:
                with pytest.raises(AuthenticationError):
                    await client.make_request("users/get_current_account")
        assert len(fake.token_requests) == 1

    @pytest.mark.asyncio
    async def test_timeout_retried_with_longer_timeout(self, fake):
        async def slow(request):
            await asyncio.sleep(1)
            return web.json_response({})

        fake.queue("users/get_current_account", slow)
        sleep = SleepRecorder()

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server, sleep=sleep, request_timeout=0.2) as client:
                account = await client.make_request("users/get_current_account")

        assert account["email"] == "owner@example.com"
        assert sleep.delays == [2]

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self, fake):
        fake.queue("files/delete_v2", web.json_response({"error_summary": "internal/"}, status=500))

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                with pytest.raises(RemoteAPIError) as excinfo:
                    await client.delete("/Root/a.jpg")

        assert excinfo.value.status == 500
        assert fake.hits["files/delete_v2"] == 1


class TestFiles:

    @pytest.mark.asyncio
    async def test_metadata(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                entry = await client.get_metadata("/Photos/cat.jpg")
                missing = await client.get_metadata("/Photos/dog.jpg")

        assert entry.is_file
        assert entry.name == "cat.jpg"
        assert entry.server_modified.isoformat() == "2024-05-01T12:00:00"
        assert entry.server_modified.tzinfo is None
        assert missing is None

    @pytest.mark.asyncio
    async def test_conflict_other_than_not_found(self, fake):
        fake.queue("files/get_metadata", web.json_response({"error_summary": "path/malformed_path/"}, status=409))

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                with pytest.raises(RemoteAPIError) as excinfo:
                    await client.get_metadata("bad path")

        assert excinfo.value.summary == "path/malformed_path/"

    @pytest.mark.asyncio
    async def test_list_folder_follows_pagination(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                entries = await client.list_folder("/Root")

        assert [e.name for e in entries] == ["Albums", "a.jpg", "b.png"]
        assert [e.tag for e in entries] == [TAG_FOLDER, TAG_FILE, TAG_FILE]
        assert entries[2].extension == "png"
        assert fake.hits["files/list_folder/continue"] == 1

    @pytest.mark.asyncio
    async def test_create_folder(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                entry = await client.create_folder("/Root/New")

        assert entry.is_folder
        assert entry.path_display == "/Root/New"

    @pytest.mark.asyncio
    async def test_move_and_delete(self, fake):
        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                moved = await client.move("/Photos/cat.jpg", "/Photos/Pets/cat.jpg")
                deleted = await client.delete("/Photos/Pets/cat.jpg")

        assert moved.path_display == "/Photos/Pets/cat.jpg"
        assert moved.is_file
        assert deleted is True
        assert fake.files == {}

    @pytest.mark.asyncio
    async def test_small_upload_single_request(self, fake, tmp_path):
        local = tmp_path / "small.jpg"
        local.write_bytes(b"tiny image")

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                entry = await client.upload(str(local), "/Root/small.jpg")

        data, arg = fake.uploads["/Root/small.jpg"]
        assert data == b"tiny image"
        assert arg["mode"] == "overwrite" and arg["autorename"] is True
        assert entry.size == len(b"tiny image")
        assert "files/upload_session/start" not in fake.hits

    @pytest.mark.asyncio
    async def test_large_upload_uses_session(self, fake, tmp_path, monkeypatch):
        monkeypatch.setattr(dropbox_module, "UPLOAD_CHUNK_SIZE", 4)
        local = tmp_path / "large.jpg"
        local.write_bytes(b"0123456789")

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                entry = await client.upload(str(local), "/Root/large.jpg")

        data, commit = fake.uploads["/Root/large.jpg"]
        assert data == b"0123456789"
        assert commit["mode"] == "overwrite" and commit["autorename"] is True
        assert fake.hits["files/upload_session/append_v2"] == 2
        assert fake.hits["files/upload_session/finish"] == 1
        assert entry.server_modified.isoformat() == "2024-06-01T09:15:30"

    @pytest.mark.asyncio
    async def test_download_streams_to_file(self, fake, tmp_path):
        destination = tmp_path / "nested" / "cat.jpg"

        async with test_utils.TestServer(fake.app) as server:
            async with make_client(server) as client:
                assert await client.download("/Photos/cat.jpg", str(destination))

        assert destination.read_bytes() == fake.files["/photos/cat.jpg"]


class TestTokenStore:

    @pytest.mark.asyncio
    async def test_file_overrides_configured_tokens(self, tmp_path):
        token_file = tmp_path / "tokens.json"
        token_file.write_text(json.dumps({"access_token": "from-file", "refresh_token": "file-refresh"}))

        store = TokenStore(str(token_file), access_token="configured", refresh_token="configured-refresh")
        await store.ensure_loaded()

        assert store.access_token == "from-file"
        assert store.refresh_token == "file-refresh"

    @pytest.mark.asyncio
    async def test_missing_file_keeps_configured_tokens(self, tmp_path):
        store = TokenStore(str(tmp_path / "absent.json"), access_token="configured")
        assert await store.load_tokens() is None
        assert store.has_access_token and not store.has_refresh_token

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_saved(self, tmp_path):
        token_file = tmp_path / "secrets" / "tokens.json"
        store = TokenStore(str(token_file), access_token="old", refresh_token="old-refresh")

        await store.save_tokens({"access_token": "new", "refresh_token": "new-refresh", "expires_in": 60})

        stored = json.loads(token_file.read_text())
        assert stored["access_token"] == "new"
        assert stored["refresh_token"] == "new-refresh"
        assert stored["expires_at"] > 0
