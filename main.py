"""钉钉渠道适配器 — 入口文件

使用钉钉 Stream 模式接收机器人消息，无需公网 IP。
未接入宿主时使用本地回声运行时，便于联调机器人。

运行: python main.py [config.yaml]
"""

import asyncio
import logging
import os
import signal
import sys

import yaml

from adapters.dingtalk_adapter import DingTalkAdapter
from core.accounts import DingTalkAccount, get_channel_config, list_account_ids, resolve_account
from core.local_runtime import build_local_runtime
from core.runtime import ChannelRuntime
from utils.logger import setup_logging

logger = logging.getLogger(__name__)


def load_config(path: str = None) -> dict:
    """加载配置文件"""
    if path is None:
        base_dir = os.path.dirname(os.path.abspath(__file__))
        path = os.path.join(base_dir, "config.yaml")

    if not os.path.exists(path):
        logger.error(f"配置文件不存在: {path}")
        logger.error("请复制 config.example.yaml 为 config.yaml 并填入实际值")
        sys.exit(1)

    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    if not get_channel_config(config):
        logger.error("config.yaml 中缺少 dingtalk 配置段")
        sys.exit(1)

    return config


def resolve_enabled_accounts(config: dict) -> list[DingTalkAccount]:
    """解析所有启用的账号，凭证缺失直接退出"""
    accounts = []
    for account_id in list_account_ids(config):
        account = resolve_account(config, account_id)
        if not account.enabled:
            logger.info(f"[{account_id}] 账号已禁用，跳过")
            continue
        if not account.configured:
            logger.error(f"[{account_id}] 请在 config.yaml 中填入 client_id 和 client_secret")
            sys.exit(1)
        accounts.append(account)

    if not accounts:
        logger.error("没有可用的钉钉账号，请检查 config.yaml")
        sys.exit(1)
    return accounts


def build_adapters(config: dict, runtime: ChannelRuntime) -> list[DingTalkAdapter]:
    return [
        DingTalkAdapter(account, config, runtime)
        for account in resolve_enabled_accounts(config)
    ]


async def main(config_path: str = None):
    setup_logging("INFO")
    config = load_config(config_path)

    adapters = build_adapters(config, build_local_runtime())
    debug = any(a.account.debug for a in adapters)
    setup_logging(config.get("log_level", "INFO"), debug=debug)
    logger.info(f"钉钉适配器启动中... 账号: {', '.join(a.account.account_id for a in adapters)}")

    # 优雅关闭
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler():
        logger.info("收到停止信号，正在关闭...")
        stop_event.set()

    try:
        loop.add_signal_handler(signal.SIGINT, _signal_handler)
        loop.add_signal_handler(signal.SIGTERM, _signal_handler)
    except NotImplementedError:
        pass

    started = []
    try:
        for adapter in adapters:
            await adapter.start()
            started.append(adapter)
            security = adapter.security()
            logger.info(f"{adapter.tag} 私聊策略: {security['dmPolicy']}, 群聊需要 @: {security['requireMention']}")
        logger.info("钉钉适配器已就绪，可以在钉钉里私聊或 @机器人 了")
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt，正在关闭...")
    finally:
        for adapter in started:
            await adapter.stop()

    logger.info("钉钉适配器已停止")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))
