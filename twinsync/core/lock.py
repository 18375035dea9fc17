"""
会话锁

在主端点控制目录下原子创建锁目录，保证同一主端点同时只有一个会话。
锁被占用时立即失败，不等待也不重试。
"""

import os
import shutil
import socket
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional
import structlog

from twinsync.config.models import ControlPaths, Endpoint
from twinsync.core.errors import LockHeld

logger = structlog.get_logger()


class LockManager:
    """会话锁管理器"""

    OWNER_FILE = 'owner'

    @contextmanager
    def acquire(self, endpoint: Endpoint) -> Iterator[Path]:
        """
        获取主端点的会话锁

        锁在 with 块退出时释放，无论正常返回、异常还是中断。

        Args:
            endpoint: 主端点（必须是本地端点）

        Yields:
            锁目录路径

        Raises:
            LockHeld: 锁已被其他会话持有
        """
        if endpoint.is_remote:
            raise ValueError(f"Lock must be taken on a local endpoint, got {endpoint}")

        lock_path = Path(ControlPaths.for_endpoint(endpoint).lock)

        try:
            os.mkdir(lock_path)
        except FileExistsError:
            owner = self._read_owner(lock_path)
            logger.error("Lock already held", lock=str(lock_path), owner=owner)
            raise LockHeld(str(lock_path), owner) from None

        logger.debug("Lock acquired", lock=str(lock_path))

        try:
            self._write_owner(lock_path)
            yield lock_path
        finally:
            self._release(lock_path)

    def is_locked(self, endpoint: Endpoint) -> bool:
        """检查主端点是否被锁定"""
        return Path(ControlPaths.for_endpoint(endpoint).lock).exists()

    def _release(self, lock_path: Path):
        """释放锁"""
        shutil.rmtree(lock_path, ignore_errors=True)
        logger.debug("Lock released", lock=str(lock_path))

    def _write_owner(self, lock_path: Path):
        """记录持有者信息，仅用于排查"""
        owner = (
            f"pid={os.getpid()} host={socket.gethostname()} "
            f"since={datetime.now().isoformat(timespec='seconds')}\n"
        )
        (lock_path / self.OWNER_FILE).write_text(owner)

    def _read_owner(self, lock_path: Path) -> Optional[str]:
        try:
            return (lock_path / self.OWNER_FILE).read_text().strip() or None
        except OSError:
            return None
