"""Dropbox API v2 client implementation."""

import asyncio
import json
import os
from typing import List, Dict, Any, Optional, Callable, Awaitable

import aiohttp

from .base import (
    RemoteStore, RemoteEntry, TAG_FOLDER,
    RateLimitError, AuthenticationError, APIConnectionError,
    RemoteNotFoundError, RemoteAPIError
)
from ..auth.token_store import TokenStore
from ..utils.logging import log_async_execution_time
from ..utils.retry import RetryPolicy, TRANSPORT_RETRY, retry_async


UPLOAD_CHUNK_SIZE = 4 * 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 64 * 1024
DEFAULT_RETRY_AFTER = 10
REQUEST_TIMEOUT_STEP = 10
DOWNLOAD_TIMEOUT_STEP = 15


class RequestTimeoutError(APIConnectionError):
    """A single attempt timed out; retried with a longer timeout."""
    pass


class TokenRefreshedError(AuthenticationError):
    """The access token was rejected and has just been refreshed."""

    retry_after = 0


class DropboxClient(RemoteStore):
    """Dropbox API v2 client for folder synchronization."""

    def __init__(
        self,
        token_store: TokenStore,
        app_key: str = "",
        app_secret: str = "",
        api_base_url: str = "https://api.dropboxapi.com",
        content_base_url: str = "https://content.dropboxapi.com",
        request_timeout: int = 15,
        download_timeout: int = 30,
        retry_policy: RetryPolicy = TRANSPORT_RETRY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs
    ):
        """Initialize Dropbox client.

        Args:
            token_store: Holder of the access and refresh tokens
            app_key: Dropbox app key, used for token refresh
            app_secret: Dropbox app secret, used for token refresh
            api_base_url: Base URL for RPC endpoints
            content_base_url: Base URL for upload/download endpoints
            request_timeout: Base timeout in seconds for RPC calls
            download_timeout: Base timeout in seconds for downloads
            retry_policy: Attempt cap and pause between transport retries
            sleep: Awaitable used for retry pauses
        """
        super().__init__(**kwargs)

        self.tokens = token_store
        self.app_key = app_key
        self.app_secret = app_secret
        self.api_url = api_base_url.rstrip('/') + "/2"
        self.content_url = content_base_url.rstrip('/') + "/2"
        self.token_url = api_base_url.rstrip('/') + "/oauth2/token"
        self.request_timeout = request_timeout
        self.download_timeout = download_timeout
        self.retry_policy = retry_policy
        self._sleep = sleep
        self.session: Optional[aiohttp.ClientSession] = None

        self.logger.info(
            "Dropbox client initialized",
            api_url=self.api_url,
            has_app_key=bool(app_key)
        )

    @classmethod
    def from_settings(cls, dropbox_settings, token_store: Optional[TokenStore] = None, **kwargs) -> "DropboxClient":
        """Build a client from the ``DropboxSettings`` group."""
        token_store = token_store or TokenStore(
            token_storage_path=dropbox_settings.token_storage_path,
            access_token=dropbox_settings.access_token,
            refresh_token=dropbox_settings.refresh_token
        )
        return cls(
            token_store=token_store,
            app_key=dropbox_settings.app_key,
            app_secret=dropbox_settings.app_secret,
            api_base_url=dropbox_settings.api_base_url,
            content_base_url=dropbox_settings.content_base_url,
            request_timeout=dropbox_settings.request_timeout,
            download_timeout=dropbox_settings.download_timeout,
            **kwargs
        )

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self):
        await self.tokens.ensure_loaded()
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    # Authentication

    async def is_connected(self) -> bool:
        """Ask for the current account; any failure means not connected."""
        await self.tokens.ensure_loaded()
        if not self.tokens.has_access_token:
            return False

        try:
            await self.make_request("users/get_current_account")
            return True
        except Exception as e:
            self.logger.warning("Remote connectivity check failed", error=str(e))
            return False

    async def refresh_access_token(self) -> bool:
        """Exchange the refresh token for a new access token.

        Raises:
            AuthenticationError: If no refresh token is configured or the
                token endpoint rejects it
        """
        await self._ensure_session()

        if not self.tokens.has_refresh_token:
            raise AuthenticationError("No refresh token available")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.tokens.refresh_token,
            "client_id": self.app_key,
            "client_secret": self.app_secret
        }

        self.logger.info("Refreshing access token")

        try:
            async with self.session.post(
                self.token_url,
                data=data,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    self.logger.error(
                        "Failed to refresh access token",
                        status=response.status,
                        response=error_text
                    )
                    raise AuthenticationError(f"Token refresh failed: {response.status} - {error_text}")

                token_data = await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthenticationError(f"Token refresh failed: {e}") from e

        if not token_data.get("access_token"):
            raise AuthenticationError("Token refresh response did not include an access token")

        await self.tokens.save_tokens(token_data)
        self.logger.info("Access token refreshed", expires_in=token_data.get("expires_in"))
        return True

    async def get_connection_status(self) -> Dict[str, Any]:
        """Describe credentials and the connected account."""
        await self.tokens.ensure_loaded()

        status = {
            "client_type": self.__class__.__name__,
            "has_app_key": bool(self.app_key),
            "has_app_secret": bool(self.app_secret),
            "has_access_token": self.tokens.has_access_token,
            "has_refresh_token": self.tokens.has_refresh_token,
            "connected": False,
            "account_email": None,
            "account_name": None,
            "error": None
        }

        if not self.tokens.has_access_token:
            status["error"] = "No access token configured"
            return status

        try:
            account = await self.make_request("users/get_current_account")
        except Exception as e:
            status["error"] = str(e)
            return status

        status["connected"] = True
        status["account_email"] = account.get("email")
        status["account_name"] = (account.get("name") or {}).get("display_name")
        return status

    # Transport

    async def make_request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "POST"
    ) -> Dict[str, Any]:
        """Call an RPC endpoint and return the decoded JSON body."""
        body = json.dumps(params).encode("utf-8") if params is not None else b"null"

        async def read_json(response: aiohttp.ClientResponse) -> Dict[str, Any]:
            text = await response.text()
            return json.loads(text) if text else {}

        return await self._call(
            method,
            f"{self.api_url}/{endpoint}",
            headers={"Content-Type": "application/json"},
            data=lambda: body,
            base_timeout=self.request_timeout,
            timeout_step=REQUEST_TIMEOUT_STEP,
            consume=read_json,
            description=endpoint
        )

    async def _content_request(
        self,
        endpoint: str,
        api_arg: Dict[str, Any],
        data: bytes = b""
    ) -> Dict[str, Any]:
        """Call a content endpoint with its argument in the Dropbox-API-Arg header."""

        async def read_json(response: aiohttp.ClientResponse) -> Dict[str, Any]:
            text = await response.text()
            return json.loads(text) if text else {}

        return await self._call(
            "POST",
            f"{self.content_url}/{endpoint}",
            headers={
                "Content-Type": "application/octet-stream",
                "Dropbox-API-Arg": json.dumps(api_arg)
            },
            data=lambda: data,
            base_timeout=self.request_timeout,
            timeout_step=REQUEST_TIMEOUT_STEP,
            consume=read_json,
            description=endpoint
        )

    async def _call(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        data: Callable[[], Any],
        base_timeout: int,
        timeout_step: int,
        consume: Callable[[aiohttp.ClientResponse], Awaitable[Any]],
        description: str
    ) -> Any:
        """Send one authenticated request with bounded retries.

        Rate limits wait for ``Retry-After``; a rejected token is refreshed
        once; timeouts retry with a longer timeout. Other transport errors
        are not retried.
        """
        await self._ensure_session()
        refreshed = False

        async def attempt_call(attempt: int) -> Any:
            nonlocal refreshed
            timeout = aiohttp.ClientTimeout(total=base_timeout + timeout_step * (attempt - 1))
            request_headers = {"Authorization": f"Bearer {self.tokens.access_token}", **headers}

            try:
                async with self.session.request(
                    method, url, headers=request_headers, data=data(), timeout=timeout
                ) as response:
                    if response.status < 400:
                        return await consume(response)
                    if response.status == 429:
                        retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                        raise RateLimitError("Rate limit exceeded", retry_after)
                    if response.status != 401:
                        await self._raise_for_error(response, description)

            except asyncio.TimeoutError as e:
                raise RequestTimeoutError(f"Request timed out: {description}") from e
            except aiohttp.ClientError as e:
                raise APIConnectionError(f"Network error: {e}") from e

            # 401: refresh once, then retry with the new token
            if refreshed or not self.tokens.has_refresh_token:
                raise AuthenticationError("Invalid or expired access token")

            await self.refresh_access_token()
            refreshed = True
            raise TokenRefreshedError("Access token refreshed")

        return await retry_async(
            attempt_call,
            policy=self.retry_policy,
            retry_on=(RateLimitError, RequestTimeoutError, TokenRefreshedError),
            description=description,
            sleep=self._sleep
        )

    async def _raise_for_error(self, response: aiohttp.ClientResponse, description: str):
        error_text = await response.text()
        summary = error_text
        try:
            summary = json.loads(error_text).get("error_summary", error_text)
        except (ValueError, AttributeError):
            pass

        if response.status == 409 and "not_found" in summary:
            raise RemoteNotFoundError(f"Path not found: {summary}")

        self.logger.error(
            "Remote API request failed",
            endpoint=description,
            status=response.status,
            summary=summary
        )
        raise RemoteAPIError(
            f"API request failed: {response.status} - {summary}",
            status=response.status,
            summary=summary
        )

    # Files

    async def get_metadata(self, path: str) -> Optional[RemoteEntry]:
        try:
            data = await self.make_request("files/get_metadata", {
                "path": path,
                "include_media_info": True,
                "include_deleted": False,
                "include_has_explicit_shared_members": False
            })
        except RemoteNotFoundError:
            return None
        return RemoteEntry.from_api(data)

    @log_async_execution_time
    async def list_folder(self, path: str) -> List[RemoteEntry]:
        """List the immediate children of a folder, following pagination."""
        result = await self.make_request("files/list_folder", {
            "path": path,
            "recursive": False,
            "include_media_info": True,
            "include_deleted": False,
            "include_has_explicit_shared_members": False
        })

        entries = [RemoteEntry.from_api(item) for item in result.get("entries", [])]

        while result.get("has_more"):
            result = await self.make_request("files/list_folder/continue", {
                "cursor": result["cursor"]
            })
            entries.extend(RemoteEntry.from_api(item) for item in result.get("entries", []))

        self.logger.debug("Listed remote folder", path=path, entries=len(entries))
        return entries

    async def create_folder(self, path: str) -> RemoteEntry:
        result = await self.make_request("files/create_folder_v2", {
            "path": path,
            "autorename": False
        })
        metadata = dict(result.get("metadata") or {"path_display": path})
        metadata.setdefault(".tag", TAG_FOLDER)
        self.logger.info("Remote folder created", path=path)
        return RemoteEntry.from_api(metadata)

    async def delete(self, path: str) -> bool:
        await self.make_request("files/delete_v2", {"path": path})
        self.logger.info("Remote path deleted", path=path)
        return True

    async def move(self, from_path: str, to_path: str) -> RemoteEntry:
        result = await self.make_request("files/move_v2", {
            "from_path": from_path,
            "to_path": to_path,
            "allow_shared_folder": False,
            "autorename": True,
            "allow_ownership_transfer": False
        })
        return RemoteEntry.from_api(result.get("metadata") or {"path_display": to_path})

    @log_async_execution_time
    async def upload(self, local_path: str, remote_path: str) -> RemoteEntry:
        """Upload a file, in one request up to 4 MiB and as a session above that."""
        file_size = os.path.getsize(local_path)

        if file_size <= UPLOAD_CHUNK_SIZE:
            with open(local_path, 'rb') as f:
                contents = f.read()
            result = await self._content_request("files/upload", {
                "path": remote_path,
                "mode": "overwrite",
                "autorename": True,
                "mute": False
            }, contents)
        else:
            result = await self._upload_session(local_path, remote_path, file_size)

        self.logger.info("File uploaded", remote_path=remote_path, size=file_size)
        return RemoteEntry.from_api(result)

    async def _upload_session(self, local_path: str, remote_path: str, file_size: int) -> Dict[str, Any]:
        with open(local_path, 'rb') as f:
            chunk = f.read(UPLOAD_CHUNK_SIZE)
            started = await self._content_request(
                "files/upload_session/start", {"close": False}, chunk
            )
            session_id = started["session_id"]
            offset = len(chunk)

            while offset < file_size:
                chunk = f.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                await self._content_request("files/upload_session/append_v2", {
                    "cursor": {"session_id": session_id, "offset": offset},
                    "close": False
                }, chunk)
                offset += len(chunk)

        self.logger.debug("Upload session transferred", session_id=session_id, offset=offset)

        return await self._content_request("files/upload_session/finish", {
            "cursor": {"session_id": session_id, "offset": offset},
            "commit": {
                "path": remote_path,
                "mode": "overwrite",
                "autorename": True,
                "mute": False
            }
        })

    @log_async_execution_time
    async def download(self, remote_path: str, local_path: str) -> bool:
        """Stream a remote file into ``local_path``."""
        os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)

        async def write_body(response: aiohttp.ClientResponse) -> bool:
            with open(local_path, 'wb') as f:
                async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
            return True

        await self._call(
            "POST",
            f"{self.content_url}/files/download",
            headers={"Dropbox-API-Arg": json.dumps({"path": remote_path})},
            data=lambda: None,
            base_timeout=self.download_timeout,
            timeout_step=DOWNLOAD_TIMEOUT_STEP,
            consume=write_body,
            description="files/download"
        )

        self.logger.debug("File downloaded", remote_path=remote_path, local_path=local_path)
        return True


def _parse_retry_after(value: Optional[str]) -> int:
    try:
        return int(value) if value is not None else DEFAULT_RETRY_AFTER
    except ValueError:
        return DEFAULT_RETRY_AFTER
