"""Access Token 缓存 — 换取并缓存钉钉开放平台的短期凭证

每个适配器实例持有一个 TokenCache，距离过期不足 60 秒时自动刷新。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from core.accounts import DingTalkAccount

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.dingtalk.com/v1.0/oauth2/accessToken"
REFRESH_MARGIN = 60  # 秒
DEFAULT_EXPIRE_IN = 7200


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: float   # 绝对时间（秒）
    client_id: str = ""


class TokenCache:
    def __init__(self, http: httpx.AsyncClient, clock: Callable[[], float] = time.time):
        self.http = http
        self.clock = clock
        self._current: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    def _fresh(self, account: DingTalkAccount) -> Optional[str]:
        current = self._current
        if current is None or current.client_id != account.client_id:
            return None
        if current.expires_at > self.clock() + REFRESH_MARGIN:
            return current.token
        return None

    async def get_token(self, account: DingTalkAccount) -> str:
        """返回可用的 token，必要时向开放平台换取新的"""
        token = self._fresh(account)
        if token:
            return token

        async with self._lock:
            # 等锁期间可能已经被别的调用刷新过
            token = self._fresh(account)
            if token:
                return token
            self._current = await self._exchange(account)
            return self._current.token

    async def _exchange(self, account: DingTalkAccount) -> AccessToken:
        now = self.clock()
        response = await self.http.post(TOKEN_URL, json={
            "appKey": account.client_id,
            "appSecret": account.client_secret,
        })
        response.raise_for_status()
        try:
            data = response.json()
        except ValueError as e:
            raise httpx.DecodingError(f"accessToken 响应不是 JSON: {e}", request=response.request)
        if not isinstance(data, dict):
            raise httpx.DecodingError(f"accessToken 响应格式错误: {data!r}", request=response.request)

        token = data.get("accessToken")
        if not token:
            raise httpx.HTTPError(f"获取 accessToken 失败: {data}")

        expire_in = data.get("expireIn")
        try:
            expire_in = int(expire_in) if expire_in is not None else DEFAULT_EXPIRE_IN
        except (TypeError, ValueError):
            raise httpx.DecodingError(f"expireIn 不是有效的秒数: {expire_in!r}", request=response.request)

        logger.debug(f"已刷新 accessToken，有效期 {expire_in}s")
        return AccessToken(token=str(token), expires_at=now + expire_in, client_id=account.client_id)

    def invalidate(self):
        """丢弃缓存的 token，下次调用重新换取"""
        self._current = None
