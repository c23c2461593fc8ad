"""钉钉 Bot 适配器 — Stream 模式，无需公网 IP

通过 dingtalk-stream 长连接接收机器人消息，交给 Dispatcher 处理，
处理完成后把结果确认回 Stream 通道。
"""

import asyncio
import json
import logging
import time
from typing import Optional

import dingtalk_stream
import httpx
from dingtalk_stream import AckMessage

from adapters.base import Acknowledgment, BotAdapter, OutgoingMessage
from core.accounts import (
    DingTalkAccount,
    describe_account,
    looks_like_id,
    normalize_target,
    resolve_dm_policy,
    resolve_require_mention,
)
from core.dispatcher import CHANNEL_ID, Dispatcher
from core.media import MediaRetriever
from core.reply_encoder import ReplyEncoder, SendResult
from core.runtime import ChannelRuntime
from core.token_cache import TokenCache

logger = logging.getLogger(__name__)


class RobotCallbackHandler(dingtalk_stream.CallbackHandler):
    """把 Stream 回调转给适配器，并把处理结果转成 AckMessage"""

    def __init__(self, adapter: "DingTalkAdapter"):
        super().__init__()
        self.adapter = adapter

    async def raw_process(self, callback_message: dingtalk_stream.CallbackMessage):
        message_id = callback_message.headers.message_id
        ack = await self.adapter.on_callback(message_id, callback_message.data)
        if ack is None:
            return None

        ack_message = AckMessage()
        ack_message.code = AckMessage.STATUS_OK if ack.success else AckMessage.STATUS_SYSTEM_EXCEPTION
        ack_message.headers.message_id = ack.message_id
        ack_message.headers.content_type = "application/json"
        ack_message.data = {"response": json.dumps({"success": ack.success})}
        return ack_message


class DingTalkAdapter(BotAdapter):
    # 停止时两次取消之间的等待间隔（秒）
    stop_poll_interval = 0.5

    def __init__(
        self,
        account: DingTalkAccount,
        config: dict,
        runtime: ChannelRuntime,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.account = account
        self.config = config
        self.runtime = runtime

        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        self.tokens = TokenCache(self.http)
        self.media = MediaRetriever(self.http, self.tokens)
        self.encoder = ReplyEncoder(self.http, self.tokens)
        self.dispatcher = Dispatcher(runtime, config, account, self.media, self.encoder)

        self.client: Optional[dingtalk_stream.DingTalkStreamClient] = None
        self._client_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

        self.running = False
        self._stopped = False
        self.last_start_at: Optional[float] = None
        self.last_stop_at: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def tag(self) -> str:
        return f"[{self.account.account_id}]"

    async def on_callback(self, message_id: str, data) -> Optional[Acknowledgment]:
        """处理一条机器人回调；返回 None 表示没有可确认的 messageId"""
        if self._stopped:
            logger.warning(f"{self.tag} 适配器已停止，拒绝新消息 {message_id or '-'}")
            return Acknowledgment(message_id, False) if message_id else None

        task = asyncio.current_task()
        if task:
            self._inflight.add(task)
        try:
            if isinstance(data, (str, bytes)):
                try:
                    data = json.loads(data)
                except ValueError as e:
                    logger.error(f"{self.tag} 回调数据不是合法 JSON: {e}")
                    return Acknowledgment(message_id, False) if message_id else None

            if self.account.debug:
                logger.debug(f"{self.tag} 收到消息: {json.dumps(data, ensure_ascii=False, indent=2)}")

            return await self.dispatcher.handle_event(message_id, data)
        finally:
            if task:
                self._inflight.discard(task)

    async def start(self):
        """连接钉钉 Stream 服务"""
        if not self.account.configured:
            raise ValueError("钉钉 client_id 和 client_secret 必须配置")

        logger.info(f"{self.tag} 正在启动钉钉 Stream 客户端...")
        credential = dingtalk_stream.Credential(self.account.client_id, self.account.client_secret)
        self.client = dingtalk_stream.DingTalkStreamClient(credential)
        self.client.register_callback_handler(dingtalk_stream.ChatbotMessage.TOPIC, RobotCallbackHandler(self))

        self._client_task = asyncio.create_task(self._run_client())
        self._client_task.add_done_callback(self._on_client_done)

        self.running = True
        self._stopped = False
        self.last_start_at = time.time()
        self.runtime.activity.record(CHANNEL_ID, self.account.account_id, "start")
        logger.info(f"{self.tag} 钉钉 Stream 客户端已启动")

    async def _run_client(self):
        await self.client.start()

    async def _stop_client(self):
        """
        取消 Stream 客户端任务直到它真正结束。

        SDK 的 start() 会捕获 CancelledError 并在 10 秒后重连，
        一次 cancel 不够，需要在它重连前再次取消。
        """
        task = self._client_task
        attempts = 0
        while not task.done():
            attempts += 1
            task.cancel()
            await asyncio.wait({task}, timeout=self.stop_poll_interval)
        logger.debug(f"{self.tag} Stream 客户端已退出（取消 {attempts} 次）")

    def _on_client_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error:
            self.last_error = str(error)
            logger.error(f"{self.tag} Stream 客户端异常退出: {error}")

    async def stop(self):
        """停止接收新消息；正在处理的消息会继续跑完"""
        if self._stopped:
            return
        self._stopped = True
        logger.info(f"{self.tag} 正在停止钉钉 Stream 客户端...")

        if self._client_task:
            await self._stop_client()

        if self._inflight:
            logger.info(f"{self.tag} 等待 {len(self._inflight)} 条消息处理完成")
            await asyncio.wait(set(self._inflight))

        self.running = False
        self.last_stop_at = time.time()
        self.runtime.activity.record(CHANNEL_ID, self.account.account_id, "stop")

        if self._owns_http:
            await self.http.aclose()
        logger.info(f"{self.tag} 钉钉 Stream 客户端已停止")

    async def send_message(self, msg: OutgoingMessage) -> SendResult:
        """主动发送（单聊或群聊）"""
        return await self.encoder.send_proactive(
            self.account,
            msg.chat_id,
            msg.text,
            is_group=msg.is_group,
            force_markdown=msg.markdown,
        )

    async def send_text(self, target: str, text: str) -> SendResult:
        """按目标地址发送：dingtalk:<userId> 或 dingtalk:group:<conversationId>"""
        cleaned = normalize_target(target)
        if not cleaned:
            return SendResult(ok=False, error="发送目标为空")

        is_group = cleaned.startswith("group:")
        chat_id = cleaned[len("group:"):] if is_group else cleaned
        if not looks_like_id(chat_id):
            return SendResult(ok=False, error=f"无效的发送目标: {target}")
        return await self.send_message(OutgoingMessage(chat_id=chat_id, text=text, is_group=is_group))

    async def probe(self) -> dict:
        """检查凭证：能换到 accessToken 即视为可用"""
        if not self.account.configured:
            return {"ok": False, "error": "Not configured"}
        try:
            await self.tokens.get_token(self.account)
        except httpx.HTTPError as e:
            return {"ok": False, "error": str(e)}
        return {"ok": True, "details": {"clientId": self.account.client_id}}

    def security(self) -> dict:
        """准入策略，交给宿主的安全层执行"""
        policy = resolve_dm_policy(self.account)
        return {
            "dmPolicy": policy.policy,
            "allowFrom": list(policy.allow_from),
            "policyPath": policy.policy_path,
            "allowFromPath": policy.allow_from_path,
            "approveHint": policy.approve_hint,
            "requireMention": resolve_require_mention(self.account),
        }

    def status(self) -> dict:
        return {
            **describe_account(self.account),
            "running": self.running,
            "lastStartAt": self.last_start_at,
            "lastStopAt": self.last_stop_at,
            "lastError": self.last_error,
        }
