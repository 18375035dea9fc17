"""
历史记录与收尾

- 模拟运行: 恢复同步前的工作文件，使本次同步不被"消费"
- 正式运行: 初始化从端（如需要），归档 previous 快照和 delta，推进上次成功同步时间
"""

import os
import shutil
from pathlib import Path
from typing import Dict, Optional
import structlog

from twinsync.config.models import ControlPaths, Endpoint, Session
from twinsync.core.state import StateTracker

logger = structlog.get_logger()


class HistoryRecorder:
    """历史记录器"""

    def __init__(self, state_tracker: StateTracker):
        self.state_tracker = state_tracker

    def read_last_run(self, endpoint: Endpoint) -> Optional[float]:
        """
        读取上次成功同步的时间

        Returns:
            epoch 秒；文件不存在或内容无效时返回 None
        """
        marker = Path(ControlPaths.for_endpoint(endpoint).last_run)
        try:
            return float(marker.read_text().strip())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Ignoring invalid last-run marker", path=str(marker), error=str(e))
            return None

    def finalize_dry_run(self, session: Session, stash: Dict[str, Optional[bytes]]):
        """模拟运行收尾: 丢弃本次快照，恢复同步前状态"""
        self.state_tracker.restore(session.primary, stash)
        logger.info("Dry run finished, state restored", timestamp=session.timestamp)

    def finalize_commit(self, session: Session, secondary_initialized: bool) -> Path:
        """
        正式运行收尾

        Args:
            session: 当前会话
            secondary_initialized: 同步前从端是否已初始化

        Returns:
            本次历史记录目录
        """
        if not secondary_initialized:
            self.state_tracker.initialize(session.secondary)

        record_dir = self.archive(session)
        self.write_last_run(session.primary, session.started_at)

        logger.info(
            "Pass committed",
            timestamp=session.timestamp,
            history=str(record_dir)
        )
        return record_dir

    def archive(self, session: Session) -> Path:
        """将 previous 快照和 delta 归档到按时间戳命名的历史目录"""
        paths = ControlPaths.for_endpoint(session.primary)
        record_dir = Path(paths.history_for(session.timestamp))
        record_dir.mkdir(parents=True, exist_ok=True)

        previous = Path(paths.previous)
        if previous.exists():
            os.replace(previous, record_dir / 'previous')

        delta = Path(paths.delta)
        if delta.exists():
            shutil.copy2(delta, record_dir / 'delta')

        logger.debug("History archived", path=str(record_dir))
        return record_dir

    def write_last_run(self, endpoint: Endpoint, started_at: float):
        """原子写入上次成功同步时间"""
        marker = Path(ControlPaths.for_endpoint(endpoint).last_run)
        temp_file = marker.with_suffix('.tmp')
        temp_file.write_text(f"{started_at:.6f}\n")
        temp_file.replace(marker)
