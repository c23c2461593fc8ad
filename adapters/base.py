"""消息平台适配层 — 抽象基类"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class IncomingMessage:
    """入站消息的会话信息（不含消息内容，内容由 normalizer 解析）"""
    platform: str
    user_id: str
    user_name: str
    chat_id: str
    is_direct: bool
    chat_title: str = ""
    message_id: str = ""
    reply_target: str = ""              # 钉钉的 sessionWebhook，单次有效
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class OutgoingMessage:
    """主动发送的出站消息"""
    chat_id: str
    text: str
    is_group: bool = False
    markdown: Optional[bool] = None     # None 表示按内容自动判断


@dataclass(frozen=True)
class Acknowledgment:
    """回给 Stream 通道的处理结果"""
    message_id: str
    success: bool


class BotAdapter(ABC):
    """消息平台适配器基类"""

    @abstractmethod
    async def start(self):
        """启动 Bot"""

    @abstractmethod
    async def stop(self):
        """停止 Bot"""

    @abstractmethod
    async def send_message(self, msg: OutgoingMessage):
        """发送消息"""

    @abstractmethod
    async def probe(self) -> dict:
        """检查凭证是否可用"""
