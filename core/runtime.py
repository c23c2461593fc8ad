"""宿主运行时接口 — 路由、会话存储、回复分发、活动记录

适配器只通过这里定义的接口调用宿主，具体实现由宿主注入
（独立运行时使用 core.local_runtime.LocalRuntime）。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass(frozen=True)
class Peer:
    kind: str   # "dm" | "group"
    id: str


@dataclass(frozen=True)
class Route:
    agent_id: str
    session_key: str
    main_session_key: str


@dataclass(frozen=True)
class LastRoute:
    """私聊时更新主会话的最后回复路由"""
    session_key: str
    channel: str
    to: str
    account_id: str


@dataclass(frozen=True)
class InboundContext:
    """与平台无关的入站上下文，交给宿主的对话管道"""
    body: str
    raw_body: str
    command_body: str
    from_: str
    to: str
    session_key: str
    account_id: str
    chat_type: str                      # "direct" | "group"
    conversation_label: str
    sender_name: str
    sender_id: str
    provider: str
    surface: str
    message_sid: Optional[str] = None
    timestamp: Optional[int] = None
    group_subject: Optional[str] = None
    media_path: Optional[str] = None
    media_type: Optional[str] = None
    media_url: Optional[str] = None
    command_authorized: bool = True     # 渠道级信任，鉴权交给宿主安全策略
    originating_channel: str = ""
    originating_to: str = ""


@dataclass(frozen=True)
class ReplyPayload:
    """对话管道给出的一条回复，markdown 优先于 text"""
    text: str = ""
    markdown: str = ""


class ReplyDispatcherHandle:
    """一次分发的句柄；mark_idle 释放"正在输入"状态"""

    def __init__(self, on_idle: Optional[Callable[[], None]] = None):
        self._on_idle = on_idle
        self.idle = False

    def mark_idle(self):
        if self.idle:
            return
        self.idle = True
        if self._on_idle:
            self._on_idle()


class RoutingResolver(ABC):
    @abstractmethod
    def resolve_agent_route(self, config: dict, channel: str, account_id: str, peer: Peer) -> Route:
        """根据渠道/账号/对端解析目标 agent 和会话"""


class SessionStore(ABC):
    @abstractmethod
    def resolve_store_path(self, store: Any, agent_id: str) -> str:
        """解析会话存储位置"""

    @abstractmethod
    def read_session_updated_at(self, store_path: str, session_key: str) -> Optional[int]:
        """读取会话上次更新时间（毫秒），没有则返回 None"""

    @abstractmethod
    async def record_inbound_session(
        self,
        store_path: str,
        session_key: str,
        ctx: InboundContext,
        update_last_route: Optional[LastRoute] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        """记录入站消息（在对话分发之前调用）"""


class ReplyRuntime(ABC):
    @abstractmethod
    def resolve_envelope_format_options(self, config: dict) -> dict:
        """信封格式选项"""

    @abstractmethod
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
        """生成带会话连续性标记的消息正文"""

    @abstractmethod
    def create_reply_dispatcher(self) -> ReplyDispatcherHandle:
        """创建回复分发句柄（负责"正在输入"状态）"""

    @abstractmethod
    async def dispatch_reply(
        self,
        ctx: InboundContext,
        config: dict,
        dispatcher: ReplyDispatcherHandle,
    ) -> Optional[ReplyPayload]:
        """执行对话，返回至多一条回复；不需要回复时返回 None"""


class ActivityRecorder(ABC):
    @abstractmethod
    def record(self, channel: str, account_id: str, event: str):
        """记录渠道活动（start / stop）"""


@dataclass
class ChannelRuntime:
    routing: RoutingResolver
    session: SessionStore
    reply: ReplyRuntime
    activity: ActivityRecorder
