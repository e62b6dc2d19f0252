"""
Discord REST v10 thread platform.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from shared.config import Settings, get_settings
from shared.errors import ThreadLockedError, ThreadPlatformError, ThreadRateLimitedError
from shared.models.domain import ThreadInfo, ThreadMessage
from shared.utils.http_client import JsonHTTPClient
from shared.utils.logging import get_logger
from threads.platform import ThreadPlatform

logger = get_logger(__name__)

PUBLIC_THREAD = 11
AUTO_ARCHIVE_MINUTES = 10080
# Discord JSON error codes
THREAD_ARCHIVED = 50083
THREAD_LOCKED = 160005


def _thread_from_payload(data: dict[str, Any]) -> ThreadInfo:
    meta = data.get("thread_metadata") or {}
    return ThreadInfo(
        thread_id=str(data["id"]),
        name=data.get("name", ""),
        parent_id=str(data["parent_id"]) if data.get("parent_id") else None,
        locked=bool(meta.get("locked", False)),
        archived=bool(meta.get("archived", False)),
    )


class DiscordThreadPlatform(ThreadPlatform):
    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = s = settings or get_settings()
        self._http = JsonHTTPClient(
            "discord",
            s.discord_base_url,
            headers={"Authorization": f"Bot {s.discord_bot_token}"},
            timeout_s=s.platform_request_timeout_s,
            max_retries=s.platform_max_retries,
            transport=transport,
        )
        self._self_id: Optional[str] = None

    async def start(self) -> None:
        await self._http.start()
        me = await self._call("GET", "/users/@me")
        self._self_id = str(me["id"])
        logger.info("discord_ready", bot_user_id=self._self_id, channel_id=self._settings.discord_channel_id)

    async def close(self) -> None:
        await self._http.close()
        self._self_id = None

    def is_ready(self) -> bool:
        return self._http.started and self._self_id is not None

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.HTTPStatusError as exc:
            raise self._translate(exc, path) from exc
        except httpx.TransportError as exc:
            raise ThreadPlatformError(f"Discord {method} {path}: {type(exc).__name__}") from exc
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _translate(exc: httpx.HTTPStatusError, path: str) -> ThreadPlatformError:
        resp = exc.response
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code == 429:
            retry_after = float(body.get("retry_after") or resp.headers.get("Retry-After") or 1.0)
            return ThreadRateLimitedError(retry_after)
        if body.get("code") in (THREAD_ARCHIVED, THREAD_LOCKED):
            return ThreadLockedError(f"Discord {path}: thread locked or archived", status=resp.status_code)
        return ThreadPlatformError(
            f"Discord {path}: HTTP {resp.status_code} {body.get('message', '')}".rstrip(),
            status=resp.status_code,
        )

    # ── Threads ─────────────────────────────────────────────────────────
    async def create_thread(self, name: str, content: str) -> ThreadInfo:
        data = await self._call(
            "POST",
            f"/channels/{self._settings.discord_channel_id}/threads",
            json={"name": name, "type": PUBLIC_THREAD, "auto_archive_duration": AUTO_ARCHIVE_MINUTES},
        )
        thread = _thread_from_payload(data)
        if content:
            await self.post_message(thread.thread_id, content)
        return thread

    async def get_thread(self, thread_id: str) -> Optional[ThreadInfo]:
        try:
            data = await self._call("GET", f"/channels/{thread_id}")
        except ThreadPlatformError as exc:
            if exc.status in (403, 404):
                return None
            raise
        return _thread_from_payload(data)

    async def list_threads(self, pattern: Optional[str] = None) -> list[ThreadInfo]:
        channel_id = self._settings.discord_channel_id
        active = await self._call("GET", f"/guilds/{self._settings.discord_guild_id}/threads/active")
        archived = await self._call("GET", f"/channels/{channel_id}/threads/archived/public")
        seen: dict[str, ThreadInfo] = {}
        for payload in (active or {}).get("threads", []) + (archived or {}).get("threads", []):
            thread = _thread_from_payload(payload)
            if thread.parent_id != channel_id:
                continue
            if pattern and pattern not in thread.name:
                continue
            seen.setdefault(thread.thread_id, thread)
        return list(seen.values())

    async def rename_thread(self, thread_id: str, name: str) -> None:
        await self._call("PATCH", f"/channels/{thread_id}", json={"name": name})

    async def lock_thread(self, thread_id: str) -> None:
        await self._call("PATCH", f"/channels/{thread_id}", json={"locked": True})

    # ── Messages ────────────────────────────────────────────────────────
    async def post_message(self, thread_id: str, content: str) -> ThreadMessage:
        data = await self._call("POST", f"/channels/{thread_id}/messages", json={"content": content})
        return ThreadMessage(message_id=str(data["id"]), content=data.get("content", content), from_self=True)

    async def edit_message(self, thread_id: str, message_id: str, content: str) -> None:
        await self._call("PATCH", f"/channels/{thread_id}/messages/{message_id}", json={"content": content})

    async def fetch_messages(self, thread_id: str, limit: int = 20) -> list[ThreadMessage]:
        data = await self._call("GET", f"/channels/{thread_id}/messages", params={"limit": limit})
        return [
            ThreadMessage(
                message_id=str(m["id"]),
                content=m.get("content", ""),
                from_self=str((m.get("author") or {}).get("id")) == self._self_id,
            )
            for m in data or []
        ]
