"""钉钉账号配置 — 解析 config.yaml 中的 dingtalk 段，支持多账号覆盖"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"

# 控制台里复制出来的是驼峰写法，这里统一成下划线
_KEY_ALIASES = {
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "robotCode": "robot_code",
    "dmPolicy": "dm_policy",
    "allowFrom": "allow_from",
    "groupPolicy": "group_policy",
}

_TARGET_PREFIX = re.compile(r"^(dingtalk|dd|ding):", re.IGNORECASE)
_ID_PATTERN = re.compile(r"^[\w-]+$")


@dataclass(frozen=True)
class DingTalkAccount:
    """单个钉钉机器人账号"""
    account_id: str = DEFAULT_ACCOUNT_ID
    client_id: str = ""
    client_secret: str = ""
    robot_code: str = ""
    name: str = "DingTalk"
    enabled: bool = True
    debug: bool = False
    dm_policy: str = "open"
    allow_from: tuple[str, ...] = field(default_factory=tuple)
    group_policy: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class DmPolicy:
    """私聊准入策略（由宿主的安全层执行，适配器只负责描述）"""
    policy: str
    allow_from: tuple[str, ...]
    policy_path: str = "channels.dingtalk.dmPolicy"
    allow_from_path: str = "channels.dingtalk.allowFrom"
    approve_hint: str = "使用 /allow dingtalk:<userId> 批准用户"


def _normalize_keys(raw: dict) -> dict:
    return {_KEY_ALIASES.get(k, k): v for k, v in (raw or {}).items()}


def get_channel_config(config: dict) -> dict:
    """取出 dingtalk 配置段（兼容 channels.dingtalk 的嵌套写法）"""
    if not config:
        return {}
    section = config.get("dingtalk")
    if section is None:
        section = (config.get("channels") or {}).get("dingtalk")
    return _normalize_keys(section or {})


def _build_account(account_id: str, raw: dict) -> DingTalkAccount:
    allow_from = raw.get("allow_from") or []
    if isinstance(allow_from, str):
        allow_from = [allow_from]
    return DingTalkAccount(
        account_id=account_id,
        client_id=str(raw.get("client_id") or ""),
        client_secret=str(raw.get("client_secret") or ""),
        robot_code=str(raw.get("robot_code") or ""),
        name=raw.get("name") or "DingTalk",
        enabled=raw.get("enabled") is not False,
        debug=bool(raw.get("debug", False)),
        dm_policy=raw.get("dm_policy") or "open",
        allow_from=tuple(str(x) for x in allow_from),
        group_policy=raw.get("group_policy") or "",
    )


def is_configured(config: dict) -> bool:
    section = get_channel_config(config)
    return bool(section.get("client_id") and section.get("client_secret"))


def list_account_ids(config: dict) -> list[str]:
    """列出所有账号 ID；没有 accounts 段时只有 default"""
    section = get_channel_config(config)
    accounts = section.get("accounts")
    if accounts:
        return list(accounts.keys())
    return [DEFAULT_ACCOUNT_ID] if is_configured(config) else []


def resolve_account(config: dict, account_id: Optional[str] = None) -> DingTalkAccount:
    """
    解析账号配置。

    accounts 段里有对应 ID 时，用该账号的配置覆盖顶层配置；
    否则回退到顶层配置（账号 ID 固定为 default）。
    """
    section = get_channel_config(config)
    wanted = account_id or DEFAULT_ACCOUNT_ID
    accounts = section.get("accounts") or {}

    if wanted in accounts:
        base = {k: v for k, v in section.items() if k != "accounts"}
        base.update(_normalize_keys(accounts[wanted]))
        return _build_account(wanted, base)

    return _build_account(DEFAULT_ACCOUNT_ID, section)


def describe_account(account: DingTalkAccount) -> dict:
    return {
        "accountId": account.account_id,
        "name": account.name,
        "enabled": account.enabled,
        "configured": account.configured,
    }


def normalize_allow_entry(raw: str) -> str:
    """去掉 dingtalk: / dd: / ding: 前缀"""
    return _TARGET_PREFIX.sub("", raw or "")


def resolve_dm_policy(account: DingTalkAccount) -> DmPolicy:
    return DmPolicy(policy=account.dm_policy or "open", allow_from=account.allow_from)


def resolve_require_mention(account: DingTalkAccount) -> bool:
    """群聊是否必须 @机器人 才响应（group_policy 不是 open 时需要）"""
    return account.group_policy != "open"


def normalize_target(target: Optional[str]) -> Optional[str]:
    if not target:
        return None
    cleaned = normalize_allow_entry(target.strip())
    return cleaned or None


def looks_like_id(value: str) -> bool:
    return bool(_ID_PATTERN.match(value or ""))
