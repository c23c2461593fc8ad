"""消息分发 — 钉钉入站消息进入宿主对话管道的完整流程

一条入站消息的处理顺序：
  解析内容 → 下载媒体（可选）→ 路由到会话 → 记录会话 → 对话 → 回复 → 确认

每条消息独立处理，互不共享状态（除了适配器持有的 TokenCache）。
无论哪一步失败，都会释放"正在输入"状态并删除临时媒体文件，
并且只向 Stream 通道确认一次。
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from adapters.base import Acknowledgment, IncomingMessage
from core.accounts import DingTalkAccount
from core.media import MediaRetriever, StagedMedia
from core.normalizer import Envelope, normalize
from core.reply_encoder import ReplyEncoder, SendResult
from core.runtime import ChannelRuntime, InboundContext, LastRoute, Peer, ReplyPayload

logger = logging.getLogger(__name__)

CHANNEL_ID = "dingtalk"
CHANNEL_LABEL = "DingTalk"


class DispatchState(str, Enum):
    RECEIVED = "received"
    NORMALIZED = "normalized"
    MEDIA_RESOLVED = "media-resolved"
    MEDIA_SKIPPED = "media-skipped"
    ROUTED = "routed"
    DISPATCHED = "dispatched"
    REPLIED = "replied"
    REPLY_SKIPPED = "reply-skipped"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"


@dataclass
class DispatchRun:
    """单条消息的处理进度"""
    message_id: str = ""
    states: list[DispatchState] = field(default_factory=lambda: [DispatchState.RECEIVED])

    @property
    def state(self) -> DispatchState:
        return self.states[-1]

    def advance(self, state: DispatchState):
        self.states.append(state)
        logger.debug(f"[{self.message_id or '-'}] {state.value}")


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_incoming(message_id: str, payload: dict) -> IncomingMessage:
    """从钉钉回调数据中取出会话信息"""
    if not isinstance(payload, dict):
        payload = {}
    return IncomingMessage(
        platform=CHANNEL_ID,
        user_id=str(payload.get("senderStaffId") or payload.get("senderId") or ""),
        user_name=payload.get("senderNick") or "Unknown",
        chat_id=str(payload.get("conversationId") or ""),
        chat_title=payload.get("conversationTitle") or "Group",
        is_direct=str(payload.get("conversationType")) == "1",
        message_id=payload.get("msgId") or message_id,
        reply_target=payload.get("sessionWebhook") or "",
        timestamp=_as_int(payload.get("createAt")),
    )


def conversation_label(incoming: IncomingMessage) -> str:
    if incoming.is_direct:
        return f"{incoming.user_name} ({incoming.user_id})"
    return f"{incoming.chat_title} - {incoming.user_name}"


def conversation_address(incoming: IncomingMessage) -> str:
    if incoming.is_direct:
        return f"{CHANNEL_ID}:{incoming.user_id}"
    return f"{CHANNEL_ID}:group:{incoming.chat_id}"


def reply_text(payload: Optional[ReplyPayload]) -> tuple[str, Optional[bool]]:
    """取回复文本；markdown 字段有值时强制 markdown，否则交给内容判断"""
    if payload is None:
        return "", None
    if payload.markdown:
        return payload.markdown, True
    return payload.text or "", None


class Dispatcher:
    def __init__(
        self,
        runtime: ChannelRuntime,
        config: dict,
        account: DingTalkAccount,
        media: MediaRetriever,
        encoder: ReplyEncoder,
    ):
        self.runtime = runtime
        self.config = config
        self.account = account
        self.media = media
        self.encoder = encoder

    async def handle_event(self, message_id: str, payload: dict) -> Optional[Acknowledgment]:
        """处理一条入站消息，返回要回给 Stream 通道的确认（没有 messageId 时不确认）"""
        run = DispatchRun(message_id=message_id or "")
        success = True
        try:
            await self.dispatch(payload, run)
            run.advance(DispatchState.ACKNOWLEDGED)
        except Exception as e:
            success = False
            run.advance(DispatchState.FAILED)
            logger.error(f"处理消息出错: {e}", exc_info=self.account.debug)

        if not message_id:
            return None
        return Acknowledgment(message_id=message_id, success=success)

    async def dispatch(self, payload: dict, run: DispatchRun):
        envelope = normalize(payload)
        run.advance(DispatchState.NORMALIZED)

        if not envelope.text:
            logger.debug("跳过空消息")
            return

        incoming = parse_incoming(run.message_id, payload)

        if envelope.media_handle and self.account.robot_code:
            async with self.media.staged(self.account, envelope.media_handle) as media:
                if media:
                    logger.debug(f"已下载媒体文件: {media.local_path}")
                    run.advance(DispatchState.MEDIA_RESOLVED)
                else:
                    run.advance(DispatchState.MEDIA_SKIPPED)
                await self._route_and_reply(envelope, incoming, media, run)
        else:
            if envelope.media_handle:
                logger.debug("未配置 robot_code，跳过媒体下载")
            run.advance(DispatchState.MEDIA_SKIPPED)
            await self._route_and_reply(envelope, incoming, None, run)

    async def _route_and_reply(
        self,
        envelope: Envelope,
        incoming: IncomingMessage,
        media: Optional[StagedMedia],
        run: DispatchRun,
    ):
        rt = self.runtime
        account_id = self.account.account_id

        peer = Peer(kind="dm", id=incoming.user_id) if incoming.is_direct else Peer(kind="group", id=incoming.chat_id)
        route = rt.routing.resolve_agent_route(self.config, CHANNEL_ID, account_id, peer)
        store_path = rt.session.resolve_store_path(
            (self.config.get("session") or {}).get("store"),
            route.agent_id,
        )
        envelope_options = rt.reply.resolve_envelope_format_options(self.config)
        # 上次更新时间，用于会话连续性标记
        previous_timestamp = rt.session.read_session_updated_at(store_path, route.session_key)
        run.advance(DispatchState.ROUTED)

        ctx = self._build_context(envelope, incoming, media, route.session_key, previous_timestamp, envelope_options)

        last_route = None
        if incoming.is_direct:
            last_route = LastRoute(
                session_key=route.main_session_key,
                channel=CHANNEL_ID,
                to=incoming.user_id,
                account_id=account_id,
            )

        # 先落会话再分发，对话中途崩溃也能续上
        await rt.session.record_inbound_session(
            store_path,
            ctx.session_key or route.session_key,
            ctx,
            update_last_route=last_route,
            on_error=lambda err: logger.debug(f"更新会话信息失败: {err}"),
        )

        kind = getattr(envelope.kind, "value", envelope.kind)
        logger.info(f"入站消息: from={incoming.user_name} type={kind} text=\"{envelope.text[:50]}...\"")

        handle = rt.reply.create_reply_dispatcher()
        try:
            reply = await rt.reply.dispatch_reply(ctx, self.config, handle)
            run.advance(DispatchState.DISPATCHED)

            result = await self.deliver(reply, incoming)
            run.advance(DispatchState.REPLIED if result else DispatchState.REPLY_SKIPPED)
        finally:
            handle.mark_idle()

    def _build_context(
        self,
        envelope: Envelope,
        incoming: IncomingMessage,
        media: Optional[StagedMedia],
        session_key: str,
        previous_timestamp: Optional[int],
        envelope_options: dict,
    ) -> InboundContext:
        chat_type = "direct" if incoming.is_direct else "group"
        label = conversation_label(incoming)
        address = conversation_address(incoming)

        body = self.runtime.reply.format_inbound_envelope(
            channel=CHANNEL_LABEL,
            from_=label,
            timestamp=incoming.timestamp,
            body=envelope.text,
            chat_type=chat_type,
            sender={"name": incoming.user_name, "id": incoming.user_id},
            previous_timestamp=previous_timestamp,
            envelope=envelope_options,
        )

        return InboundContext(
            body=body,
            raw_body=envelope.text,
            command_body=envelope.text,
            from_=address,
            to=address,
            session_key=session_key,
            account_id=self.account.account_id,
            chat_type=chat_type,
            conversation_label=label,
            group_subject=None if incoming.is_direct else incoming.chat_title,
            sender_name=incoming.user_name,
            sender_id=incoming.user_id,
            provider=CHANNEL_ID,
            surface=CHANNEL_ID,
            message_sid=incoming.message_id or None,
            timestamp=incoming.timestamp,
            media_path=media.local_path if media else None,
            media_type=media.content_type if media else None,
            media_url=media.local_path if media else None,
            command_authorized=True,
            originating_channel=CHANNEL_ID,
            originating_to=address,
        )

    async def deliver(self, payload: Optional[ReplyPayload], incoming: IncomingMessage) -> Optional[SendResult]:
        """发送对话管道给出的回复；没有可发送的内容时返回 None"""
        text, force_markdown = reply_text(payload)
        if not text:
            logger.debug("回复为空，跳过发送")
            return None

        result = await self.encoder.send(
            self.account,
            incoming.reply_target,
            text,
            # 只有群聊才 @ 发送者
            at_user_id=None if incoming.is_direct else incoming.user_id,
            force_markdown=force_markdown,
        )
        if not result.ok:
            logger.error(f"回复发送失败: {result.error}")
        return result
