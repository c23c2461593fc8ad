"""消息解析 — 把钉钉各类型消息统一成 Envelope

纯函数，不做 I/O，不抛异常：字段缺失或格式不对时退化为占位文本。
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    TEXT = "text"
    RICH_TEXT = "richText"
    PICTURE = "picture"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


class MediaKind(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


@dataclass(frozen=True)
class Envelope:
    """统一的入站消息内容"""
    text: str
    kind: Union[MessageKind, str]       # 未知类型保留原始 msgtype
    media_handle: Optional[str] = None  # downloadCode
    media_kind: Optional[MediaKind] = None


def _section(payload: dict, key: str) -> dict:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def _text_content(payload: dict) -> str:
    content = _section(payload, "text").get("content")
    return content.strip() if isinstance(content, str) else ""


def _download_code(payload: dict) -> Optional[str]:
    code = _section(payload, "content").get("downloadCode")
    return code if isinstance(code, str) and code else None


def _decode_text(payload: dict) -> Envelope:
    return Envelope(text=_text_content(payload), kind=MessageKind.TEXT)


def _decode_rich_text(payload: dict) -> Envelope:
    parts = _section(payload, "content").get("richText")
    if not isinstance(parts, list):
        parts = []
    text = "".join(
        p["text"] for p in parts
        if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str)
    )
    return Envelope(text=text or "[富文本消息]", kind=MessageKind.RICH_TEXT)


def _decode_picture(payload: dict) -> Envelope:
    return Envelope(
        text="[图片]",
        kind=MessageKind.PICTURE,
        media_handle=_download_code(payload),
        media_kind=MediaKind.IMAGE,
    )


def _decode_audio(payload: dict) -> Envelope:
    # 钉钉会附带语音识别结果
    recognition = _section(payload, "content").get("recognition")
    if not isinstance(recognition, str) or not recognition.strip():
        recognition = "[语音消息]"
    return Envelope(
        text=recognition,
        kind=MessageKind.AUDIO,
        media_handle=_download_code(payload),
        media_kind=MediaKind.AUDIO,
    )


def _decode_video(payload: dict) -> Envelope:
    return Envelope(
        text="[视频]",
        kind=MessageKind.VIDEO,
        media_handle=_download_code(payload),
        media_kind=MediaKind.VIDEO,
    )


def _decode_file(payload: dict) -> Envelope:
    file_name = _section(payload, "content").get("fileName")
    if not isinstance(file_name, str) or not file_name:
        file_name = "文件"
    return Envelope(
        text=f"[文件: {file_name}]",
        kind=MessageKind.FILE,
        media_handle=_download_code(payload),
        media_kind=MediaKind.FILE,
    )


def _decode_unknown(payload: dict, msgtype: str) -> Envelope:
    return Envelope(text=_text_content(payload) or f"[{msgtype}消息]", kind=msgtype)


DECODERS: dict[MessageKind, Callable[[dict], Envelope]] = {
    MessageKind.TEXT: _decode_text,
    MessageKind.RICH_TEXT: _decode_rich_text,
    MessageKind.PICTURE: _decode_picture,
    MessageKind.AUDIO: _decode_audio,
    MessageKind.VIDEO: _decode_video,
    MessageKind.FILE: _decode_file,
}


def normalize(payload: dict) -> Envelope:
    """按 msgtype 分发到对应的解析函数"""
    if not isinstance(payload, dict):
        return Envelope(text="[unknown消息]", kind="unknown")

    msgtype = payload.get("msgtype") or "text"
    if not isinstance(msgtype, str):
        msgtype = str(msgtype)

    try:
        kind = MessageKind(msgtype)
    except ValueError:
        return _decode_unknown(payload, msgtype)
    return DECODERS[kind](payload)
