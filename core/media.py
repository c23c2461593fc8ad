"""媒体下载 — 用 downloadCode 换取下载地址并落地为临时文件

下载失败不影响消息处理：记录日志后返回 None，消息按纯文本继续走。
"""

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from core.accounts import DingTalkAccount
from core.token_cache import TokenCache

logger = logging.getLogger(__name__)

DOWNLOAD_URL = "https://api.dingtalk.com/v1.0/robot/messageFiles/download"


@dataclass(frozen=True)
class StagedMedia:
    """落地到本地的临时媒体文件"""
    local_path: str
    content_type: str

    def cleanup(self):
        """删除临时文件，忽略删除失败"""
        try:
            if os.path.exists(self.local_path):
                os.unlink(self.local_path)
        except OSError as e:
            logger.debug(f"删除临时文件失败: {self.local_path} ({e})")


def extension_for(content_type: str) -> str:
    """从 Content-Type 取扩展名：image/png; charset=x -> png"""
    if not content_type or "/" not in content_type:
        return "bin"
    subtype = content_type.split("/", 1)[1].split(";", 1)[0].strip()
    return subtype or "bin"


class MediaRetriever:
    def __init__(self, http: httpx.AsyncClient, tokens: TokenCache):
        self.http = http
        self.tokens = tokens

    async def fetch(self, account: DingTalkAccount, download_code: str) -> Optional[StagedMedia]:
        try:
            token = await self.tokens.get_token(account)

            response = await self.http.post(
                DOWNLOAD_URL,
                json={"downloadCode": download_code, "robotCode": account.robot_code},
                headers={"x-acs-dingtalk-access-token": token},
            )
            response.raise_for_status()
            data = response.json()
            download_url = data.get("downloadUrl") if isinstance(data, dict) else None
            if not isinstance(download_url, str) or not download_url:
                logger.warning("下载地址为空，跳过媒体文件")
                return None

            media_response = await self.http.get(download_url)
            media_response.raise_for_status()
            content_type = media_response.headers.get("content-type", "")

            fd, path = tempfile.mkstemp(prefix="dingtalk_", suffix=f".{extension_for(content_type)}")
            with os.fdopen(fd, "wb") as f:
                f.write(media_response.content)

            return StagedMedia(
                local_path=path,
                content_type=content_type or "application/octet-stream",
            )
        except (httpx.HTTPError, ValueError, OSError) as e:
            logger.error(f"下载媒体文件失败: {e}")
            return None

    @asynccontextmanager
    async def staged(self, account: DingTalkAccount, download_code: str) -> AsyncIterator[Optional[StagedMedia]]:
        """下载媒体并在退出时删除，无论处理成功与否"""
        media = await self.fetch(account, download_code)
        try:
            yield media
        finally:
            if media:
                media.cleanup()
