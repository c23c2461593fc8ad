"""日志配置"""

import logging
import sys

# 第三方库只保留 WARNING 以上
QUIET_LOGGERS = ("httpx", "httpcore", "dingtalk_stream", "websockets")

_HANDLER_NAME = "dingtalk-console"


def setup_logging(level: str = "INFO", debug: bool = False):
    """配置全局日志格式；debug=True 时强制 DEBUG（账号开启 debug 时使用）"""
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)

    # 重复调用时不叠加 handler
    if not any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
