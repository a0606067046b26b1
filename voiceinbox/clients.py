"""HTTP clients for the message source (Discord) and document store (Obsidian Local REST API)."""

import logging
from pathlib import Path
from typing import List
from urllib.parse import quote

import requests

from .errors import DocumentStoreError, SourceError
from .models import Attachment, SourceItem
from .selector import sort_items

log = logging.getLogger(__name__)

CHECK_MARK = "%E2%9C%85"  # URL-escaped ✅
MAX_FETCH_LIMIT = 100


def _describe(resp: requests.Response) -> str:
    return f"{resp.status_code} {resp.reason}: {resp.text[:2048].strip()}"


def _json_object(resp: requests.Response, error_cls, action: str) -> dict:
    try:
        payload = resp.json()
    except ValueError as e:
        raise error_cls(f"{action} returned invalid JSON: {e}")
    if not isinstance(payload, dict):
        raise error_cls(f"{action} returned {type(payload).__name__}, expected an object")
    return payload


def _parse_item(raw: dict) -> SourceItem:
    return SourceItem(
        id=str(raw.get("id", "")),
        channel_id=str(raw.get("channel_id", "")),
        guild_id=str(raw.get("guild_id") or ""),
        author_id=str((raw.get("author") or {}).get("id", "")),
        text=raw.get("content") or "",
        attachments=[
            Attachment(
                id=str(a.get("id", "")),
                url=a.get("url", ""),
                filename=a.get("filename", ""),
                content_type=a.get("content_type") or "",
            )
            for a in raw.get("attachments") or []
        ],
    )


class DiscordClient:
    def __init__(self, token: str, base_url: str = "https://discord.com/api/v10"):
        self.base_url = base_url.rstrip("/")
        self._session = requests.Session()
        self._session.headers["Authorization"] = f"Bot {token}"

    def _request(self, method: str, url: str, timeout: float, **kwargs) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as e:
            raise SourceError(f"discord {method} {url} failed: {e}")

    def me(self, timeout: float) -> dict:
        resp = self._request("GET", f"{self.base_url}/users/@me", timeout)
        if resp.status_code != 200:
            raise SourceError(f"discord me failed: {_describe(resp)}")
        return _json_object(resp, SourceError, "discord me")

    def fetch_messages(self, channel_id: str, after_id: str, limit: int, timeout: float) -> List[SourceItem]:
        params = {"limit": max(1, min(limit, MAX_FETCH_LIMIT))}
        if after_id and after_id.strip():
            params["after"] = after_id
        resp = self._request("GET", f"{self.base_url}/channels/{channel_id}/messages", timeout, params=params)
        if resp.status_code != 200:
            raise SourceError(f"discord fetch messages failed: {_describe(resp)}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise SourceError(f"discord fetch messages returned invalid JSON: {e}")
        if not isinstance(payload, list):
            raise SourceError(f"discord fetch messages returned {type(payload).__name__}, expected a list")
        return sort_items(_parse_item(m) for m in payload)

    def get_channel(self, channel_id: str, timeout: float) -> str:
        """Return the parent guild id of a channel ('' for DMs)."""
        resp = self._request("GET", f"{self.base_url}/channels/{channel_id}", timeout)
        if resp.status_code != 200:
            raise SourceError(f"discord get channel failed: {_describe(resp)}")
        return str(_json_object(resp, SourceError, "discord get channel").get("guild_id") or "")

    def acknowledge(self, channel_id: str, item_id: str, timeout: float):
        url = f"{self.base_url}/channels/{channel_id}/messages/{item_id}/reactions/{CHECK_MARK}/@me"
        resp = self._request("PUT", url, timeout)
        if resp.status_code != 204:
            raise SourceError(f"discord add reaction failed: {_describe(resp)}")

    def download_attachment(self, url: str, dest: Path, timeout: float):
        resp = self._request("GET", url, timeout, stream=True)
        with resp:
            if resp.status_code != 200:
                raise SourceError(f"discord attachment download failed: {_describe(resp)}")
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                with open(dest, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=64 * 1024):
                        fh.write(chunk)
            except requests.RequestException as e:
                raise SourceError(f"discord attachment download interrupted: {e}")
            except OSError as e:
                raise SourceError(f"write attachment {dest}: {e}")
        log.debug("Downloaded %s -> %s", url, dest)


def encode_vault_path(vault_path: str) -> str:
    return "/".join(quote(part, safe="") for part in vault_path.lstrip("/").split("/"))


class ObsidianClient:
    def __init__(self, base_url: str, auth_header: str, api_key: str, verify_tls: bool = False):
        self.base_url = base_url.rstrip("/")
        self._session = requests.Session()
        self._session.verify = verify_tls
        if auth_header:
            self._session.headers[auth_header] = f"Bearer {api_key}"

    def _request(self, method: str, vault_path: str, timeout: float, **kwargs) -> requests.Response:
        url = f"{self.base_url}/vault/{encode_vault_path(vault_path)}" if vault_path is not None else f"{self.base_url}/"
        try:
            return self._session.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as e:
            raise DocumentStoreError(f"obsidian {method} {url} failed: {e}")

    def health(self, timeout: float) -> dict:
        resp = self._request("GET", None, timeout)
        if resp.status_code != 200:
            raise DocumentStoreError(f"obsidian health failed: {_describe(resp)}")
        return _json_object(resp, DocumentStoreError, "obsidian health")

    def file_exists(self, path: str, timeout: float) -> bool:
        resp = self._request("GET", path, timeout)
        if resp.status_code == 200:
            return True
        if resp.status_code == 404:
            return False
        raise DocumentStoreError(f"obsidian file exists check failed: {_describe(resp)}")

    def create_file(self, path: str, content: str, timeout: float):
        self._write("PUT", path, content, timeout, "create file")

    def append_file(self, path: str, content: str, timeout: float):
        self._write("POST", path, content, timeout, "append")

    def _write(self, method: str, path: str, content: str, timeout: float, action: str):
        resp = self._request(
            method, path, timeout,
            data=content.encode("utf-8"),
            headers={"Content-Type": "text/markdown; charset=utf-8"},
        )
        if resp.status_code not in (200, 201, 204):
            raise DocumentStoreError(f"obsidian {action} failed: {_describe(resp)}")

    def read_file(self, path: str, timeout: float) -> str:
        resp = self._request("GET", path, timeout)
        if resp.status_code != 200:
            raise DocumentStoreError(f"obsidian read failed: {_describe(resp)}")
        resp.encoding = resp.encoding or "utf-8"
        return resp.text
