"""本地运行时 — 不接入宿主时使用的最小实现

按对端路由到会话、内存会话存储、回声回复。
独立运行适配器或联调钉钉机器人时使用。
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from core.runtime import (
    ActivityRecorder,
    ChannelRuntime,
    InboundContext,
    LastRoute,
    Peer,
    ReplyDispatcherHandle,
    ReplyPayload,
    ReplyRuntime,
    Route,
    RoutingResolver,
    SessionStore,
)

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "main"


@dataclass
class Session:
    """单个会话的状态"""
    session_key: str
    updated_at: Optional[int] = None    # 毫秒
    message_count: int = 0
    last_route: Optional[LastRoute] = None
    history: list[str] = field(default_factory=list)


class LocalRouting(RoutingResolver):
    def __init__(self, agent_id: str = DEFAULT_AGENT_ID):
        self.agent_id = agent_id

    def resolve_agent_route(self, config: dict, channel: str, account_id: str, peer: Peer) -> Route:
        return Route(
            agent_id=self.agent_id,
            session_key=f"agent:{self.agent_id}:{channel}:{peer.kind}:{peer.id}",
            main_session_key=f"agent:{self.agent_id}:main",
        )


class LocalSessionStore(SessionStore):
    def __init__(self, max_history: int = 20):
        self.sessions: dict[str, Session] = {}
        self.max_history = max_history

    def get_session(self, session_key: str) -> Session:
        """获取或创建会话"""
        if session_key not in self.sessions:
            self.sessions[session_key] = Session(session_key=session_key)
        return self.sessions[session_key]

    def resolve_store_path(self, store: Any, agent_id: str) -> str:
        return f"{store or 'memory'}/{agent_id}"

    def read_session_updated_at(self, store_path: str, session_key: str) -> Optional[int]:
        session = self.sessions.get(session_key)
        return session.updated_at if session else None

    async def record_inbound_session(
        self,
        store_path: str,
        session_key: str,
        ctx: InboundContext,
        update_last_route: Optional[LastRoute] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        session = self.get_session(session_key)
        session.updated_at = ctx.timestamp or int(time.time() * 1000)
        session.message_count += 1
        session.history.append(ctx.raw_body)
        del session.history[:-self.max_history]

        if update_last_route:
            main = self.get_session(update_last_route.session_key)
            main.last_route = update_last_route
        logger.debug(f"[{session_key}] 记录入站消息，共 {session.message_count} 条")


def _format_elapsed(ms: int) -> str:
    seconds = max(ms // 1000, 0)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


class EchoReplyRuntime(ReplyRuntime):
    """把收到的消息原样回复，用于联调"""

    def __init__(self, prefix: str = "收到你的消息: "):
        self.prefix = prefix

    def resolve_envelope_format_options(self, config: dict) -> dict:
        return {"include_elapsed": True}

    def format_inbound_envelope(
        self,
        channel: str,
        from_: str,
        timestamp: Optional[int],
        body: str,
        chat_type: str,
        sender: dict,
        previous_timestamp: Optional[int],
        envelope: dict,
    ) -> str:
        header = f"{channel} {from_}"
        if envelope.get("include_elapsed") and timestamp and previous_timestamp:
            header += f" +{_format_elapsed(timestamp - previous_timestamp)}"
        return f"[{header}] {body}"

    def create_reply_dispatcher(self) -> ReplyDispatcherHandle:
        return ReplyDispatcherHandle()

    async def dispatch_reply(
        self,
        ctx: InboundContext,
        config: dict,
        dispatcher: ReplyDispatcherHandle,
    ) -> Optional[ReplyPayload]:
        if not ctx.raw_body:
            return None
        return ReplyPayload(text=f"{self.prefix}{ctx.raw_body}")


class LoggingActivity(ActivityRecorder):
    def __init__(self):
        self.events: list[tuple[str, str, str]] = []

    def record(self, channel: str, account_id: str, event: str):
        self.events.append((channel, account_id, event))
        logger.info(f"[{channel}:{account_id}] {event}")


def build_local_runtime() -> ChannelRuntime:
    return ChannelRuntime(
        routing=LocalRouting(),
        session=LocalSessionStore(),
        reply=EchoReplyRuntime(),
        activity=LoggingActivity(),
    )
