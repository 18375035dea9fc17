"""
核心模块

功能:
- 会话定位与锁
- 快照、差异与保护列表
- rsync 传输与同步编排
- 历史记录
"""

from twinsync.core.engine import PassResult, PassState, SyncOrchestrator
from twinsync.core.errors import (
    ComparisonToolFailure,
    LockHeld,
    RemoteUnreachable,
    SessionInterrupted,
    TransferEngineFailure,
    TwinsyncError,
)
from twinsync.core.locator import build_session, parse_target_uri

__all__ = [
    'PassResult',
    'PassState',
    'SyncOrchestrator',
    'ComparisonToolFailure',
    'LockHeld',
    'RemoteUnreachable',
    'SessionInterrupted',
    'TransferEngineFailure',
    'TwinsyncError',
    'build_session',
    'parse_target_uri',
]
