"""消息发送 — 根据内容选择 text / markdown 格式并调用钉钉接口

回复走入站消息附带的 sessionWebhook；主动发送走机器人单聊/群聊接口。
发送失败不抛异常，统一返回 SendResult。
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from core.accounts import DingTalkAccount
from core.token_cache import TokenCache

logger = logging.getLogger(__name__)

GROUP_SEND_URL = "https://api.dingtalk.com/v1.0/robot/groupMessages/send"
OTO_SEND_URL = "https://api.dingtalk.com/v1.0/robot/oToMessages/batchSend"

DEFAULT_TITLE = "Clawdbot 消息"
TITLE_MAX_LENGTH = 20

# 行首是标题/列表/引用标记，或正文里出现强调、代码、链接语法
_MARKDOWN_HINT = re.compile(r"^[#*>-]|[*_`#\[\]]")
_TITLE_MARKERS = re.compile(r"^[#*\s\->]+")


@dataclass(frozen=True)
class SendResult:
    ok: bool
    data: Any = None
    error: str = ""


def wants_markdown(text: str) -> bool:
    return bool(_MARKDOWN_HINT.search(text)) or "\n" in text


def choose_markdown(text: str, force_markdown: Optional[bool] = None) -> bool:
    """force_markdown 显式给出时以它为准，否则按内容判断"""
    if force_markdown is not None:
        return force_markdown
    return wants_markdown(text)


def derive_title(text: str) -> str:
    """取第一行去掉 markdown 标记后的前 20 个字符作为通知标题"""
    first_line = text.split("\n", 1)[0]
    title = _TITLE_MARKERS.sub("", first_line)[:TITLE_MAX_LENGTH]
    return title or DEFAULT_TITLE


def _at_block(at_user_id: str) -> dict:
    return {"atUserIds": [at_user_id], "isAtAll": False}


def build_text_body(text: str, at_user_id: Optional[str] = None) -> dict:
    body: dict = {
        "msgtype": "text",
        "text": {"content": text},
    }
    if at_user_id:
        body["at"] = _at_block(at_user_id)
    return body


def build_markdown_body(text: str, title: Optional[str] = None, at_user_id: Optional[str] = None) -> dict:
    final_text = text
    # markdown 消息必须在正文里带上 @userId 才会触发 @ 提醒
    if at_user_id:
        final_text = f"{final_text} @{at_user_id}"

    body: dict = {
        "msgtype": "markdown",
        "markdown": {
            "title": title or DEFAULT_TITLE,
            "text": final_text,
        },
    }
    if at_user_id:
        body["at"] = _at_block(at_user_id)
    return body


def build_reply_body(
    text: str,
    at_user_id: Optional[str] = None,
    force_markdown: Optional[bool] = None,
    title: Optional[str] = None,
) -> dict:
    if choose_markdown(text, force_markdown):
        return build_markdown_body(text, title or derive_title(text), at_user_id)
    return build_text_body(text, at_user_id)


class ReplyEncoder:
    def __init__(self, http: httpx.AsyncClient, tokens: TokenCache):
        self.http = http
        self.tokens = tokens

    async def _post(self, account: DingTalkAccount, url: str, body: dict) -> SendResult:
        try:
            token = await self.tokens.get_token(account)
            response = await self.http.post(url, json=body, headers={
                "x-acs-dingtalk-access-token": token,
                "Content-Type": "application/json",
            })
            response.raise_for_status()
        except httpx.HTTPError as e:
            # token 被提前吊销时，下次发送重新换取
            if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 401:
                self.tokens.invalidate()
            logger.error(f"发送消息失败: {e}")
            return SendResult(ok=False, error=str(e))

        try:
            data = response.json()
        except ValueError:
            data = response.text
        return SendResult(ok=True, data=data)

    async def send(
        self,
        account: DingTalkAccount,
        session_webhook: str,
        text: str,
        at_user_id: Optional[str] = None,
        force_markdown: Optional[bool] = None,
        title: Optional[str] = None,
    ) -> SendResult:
        """通过 sessionWebhook 回复一条消息"""
        if not session_webhook:
            return SendResult(ok=False, error="缺少 sessionWebhook")

        body = build_reply_body(text, at_user_id, force_markdown, title)
        logger.debug(f"发送回复: msgtype={body['msgtype']}, at={at_user_id or '-'}")
        return await self._post(account, session_webhook, body)

    async def send_proactive(
        self,
        account: DingTalkAccount,
        target_id: str,
        text: str,
        is_group: bool = False,
        force_markdown: Optional[bool] = None,
    ) -> SendResult:
        """主动发送（不依赖入站消息），需要配置 robot_code"""
        if not account.robot_code:
            return SendResult(ok=False, error="主动发送需要配置 robot_code")

        if choose_markdown(text, force_markdown):
            msg_key = "sampleMarkdown"
            msg_param = {"title": derive_title(text), "text": text}
        else:
            msg_key = "sampleText"
            msg_param = {"content": text}

        body = {
            "robotCode": account.robot_code,
            "msgKey": msg_key,
            "msgParam": json.dumps(msg_param, ensure_ascii=False),
        }
        if is_group:
            body["openConversationId"] = target_id
            url = GROUP_SEND_URL
        else:
            body["userIds"] = [target_id]
            url = OTO_SEND_URL

        return await self._post(account, url, body)
