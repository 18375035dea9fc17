"""
同步过程中的错误类型
"""

from typing import List, Optional


class TwinsyncError(Exception):
    """所有 twinsync 错误的基类"""


class LockHeld(TwinsyncError):
    """主端点上已有同步会话在进行"""

    def __init__(self, lock_path: str, owner: Optional[str] = None):
        self.lock_path = lock_path
        self.owner = owner
        message = f"Sync session already in progress: {lock_path}"
        if owner:
            message += f" ({owner})"
        super().__init__(message)


class TransferEngineFailure(TwinsyncError):
    """rsync 调用失败（包括超时和找不到可执行文件）"""

    def __init__(
        self,
        command: List[str],
        returncode: Optional[int] = None,
        stderr: str = '',
        reason: Optional[str] = None
    ):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.reason = reason

        detail = reason or f"exit code {returncode}"
        super().__init__(f"rsync failed ({detail}): {stderr.strip()[-500:]}")


class RemoteUnreachable(TwinsyncError):
    """远程主机无法连接，或远程命令无法执行"""

    def __init__(self, host: str, detail: str = ''):
        self.host = host
        self.detail = detail
        super().__init__(f"Remote host unreachable: {host} {detail}".rstrip())


class ComparisonToolFailure(TwinsyncError):
    """快照比较本身出错，而不是发现了差异"""


class SessionInterrupted(TwinsyncError):
    """会话被外部信号中断"""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Session interrupted by signal {signum}")
