"""
统一的日志系统配置
支持毫秒精度的时间戳和统一的日志格式
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from core.config import config


class MillisecondFormatter(logging.Formatter):
    """包含毫秒精度的日志格式化器"""

    def format(self, record):
        # 时间戳：精确到毫秒
        import datetime
        ct = datetime.datetime.fromtimestamp(record.created)
        timestamp = ct.strftime('%H:%M:%S') + '.%03d' % (record.msecs)

        # 提取日志来源（模块名）
        logger_name = record.name.split('.')[-1]

        message = f"{timestamp} [{record.levelname}] [{logger_name}] {record.getMessage()}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class ThirdPartyFilter(logging.Filter):
    """过滤第三方库的多余日志"""

    # 需要完全禁止的日志
    BLOCKED_MESSAGES = [
        "Unclosed client session",
        "Unclosed connector",
        "Task was destroyed but it is pending",
        "DeprecationWarning",
    ]

    def filter(self, record):
        msg = record.getMessage()
        for blocked in self.BLOCKED_MESSAGES:
            if blocked in msg:
                return False
        return True


def setup_logging(log_level: Optional[str] = None, log_file: Optional[Path] = None):
    """
    配置日志系统

    Args:
        log_level: 日志级别，默认使用 config.LOG_LEVEL
        log_file: 日志文件路径，默认使用 config.LOG_FILE；传入 False 等价值时不写文件
    """
    level_name = (log_level or config.LOG_LEVEL).upper()
    log_level_value = getattr(logging, level_name, logging.INFO)
    log_file = log_file if log_file is not None else config.LOG_FILE

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # 设置根logger为DEBUG，让处理器来控制级别

    # 清除已有的处理器
    root_logger.handlers.clear()

    formatter = MillisecondFormatter()

    # 控制台输出
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level_value)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ThirdPartyFilter())
    root_logger.addHandler(console_handler)

    # 文件输出
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(log_level_value)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ThirdPartyFilter())
        root_logger.addHandler(file_handler)

    # 设置第三方库日志级别为WARNING
    third_party_loggers = [
        'aiohttp', 'aiohttp.access', 'asyncio', 'multipart', 'urllib3',
    ]

    for logger_name in third_party_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger(logger_name).addFilter(ThirdPartyFilter())

    # 禁用 uvicorn 的访问日志（INFO级别的请求日志）
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging system initialized - level: {level_name}")
    if log_file:
        logger.info(f"Log file: {log_file}")

    return logger
