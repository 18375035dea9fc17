"""
会话定位器

将源目录和目标地址 `[host:]path` 解析为端点，并创建会话。
不做任何网络检查，远程主机不可达会在 rsync 执行时暴露。
"""

import os
import time
from datetime import datetime
from typing import Optional
import structlog

from twinsync.config.models import Endpoint, Session, SessionOptions, Mode

logger = structlog.get_logger()


TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'


def parse_target_uri(uri: str) -> Endpoint:
    """
    解析目标地址

    Args:
        uri: `path` 或 `host:path`，按第一个冒号分割

    Returns:
        Endpoint 对象

    Raises:
        ValueError: 地址为空，或 host/path 其中一部分为空
    """
    if not uri:
        raise ValueError("Target location must not be empty")

    parts = uri.split(':', 1)
    if len(parts) < 2:
        return Endpoint(path=uri)

    host, path = parts
    # ":path" 不回退为本地路径，"host:" 也不代表远端主目录
    if not host or not path:
        raise ValueError(f"Invalid target location '{uri}', expected [host:]path")

    return Endpoint(path=path, host=host)


def make_timestamp(now: Optional[float] = None) -> str:
    """生成本次同步的时间戳标识"""
    if now is None:
        now = time.time()
    return datetime.fromtimestamp(now).strftime(TIMESTAMP_FORMAT)


def build_session(
    source: str,
    target: str,
    options: SessionOptions,
    now: Optional[float] = None
) -> Session:
    """
    创建同步会话

    Args:
        source: 本地源目录（主端点）
        target: 目标地址（从端点）
        options: 命令行选项
        now: 会话开始时间（epoch 秒），默认当前时间

    Returns:
        Session 对象，初始模式为 MIRROR
    """
    if not source:
        raise ValueError("Source directory must not be empty")

    if now is None:
        now = time.time()

    primary = Endpoint(path=os.path.abspath(source))
    secondary = parse_target_uri(target)
    if not secondary.is_remote:
        secondary = Endpoint(path=os.path.abspath(secondary.path))

    session = Session(
        primary=primary,
        secondary=secondary,
        options=options,
        timestamp=make_timestamp(now),
        started_at=now,
        mode=Mode.MIRROR,
    )

    logger.debug(
        "Session located",
        primary=str(primary),
        secondary=str(secondary),
        timestamp=session.timestamp
    )
    return session
