"""
配置与会话数据模型
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path, PurePath, PurePosixPath
from typing import Optional


# 控制目录名（位于每个端点根目录下，不参与同步）
CONTROL_DIR_NAME = ".twinsync"


class Mode(Enum):
    """同步模式"""
    MIRROR = "mirror"  # 首次同步，仅主端推送
    FULLDUPLEX = "fullduplex"  # 双端均已初始化，先拉后推
    PRIMARY = "primary"  # 显式单向：主端可删除
    SECONDARY = "secondary"  # 显式单向：从端可删除

    @classmethod
    def parse(cls, value: str) -> Optional['Mode']:
        """按名称解析模式，无法识别时返回 None"""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class Endpoint:
    """同步端点：本地路径或 host:path"""
    path: str
    host: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return self.host is not None

    def rsync_location(self) -> str:
        """rsync 使用的目录地址（带尾部斜杠，表示同步目录内容）"""
        path = self.path.rstrip('/') + '/'
        if self.is_remote:
            return f'{self.host}:{path}'
        return path

    def __str__(self) -> str:
        if self.is_remote:
            return f'{self.host}:{self.path}'
        return self.path


@dataclass(frozen=True)
class ControlPaths:
    """控制目录下各个文件的路径"""
    root: PurePath

    @classmethod
    def for_endpoint(cls, endpoint: Endpoint) -> 'ControlPaths':
        if endpoint.is_remote:
            return cls(PurePosixPath(endpoint.path))
        return cls(Path(endpoint.path))

    @property
    def base(self) -> PurePath:
        return self.root / CONTROL_DIR_NAME

    @property
    def settings(self) -> PurePath:
        return self.base / 'settings'

    @property
    def last_run(self) -> PurePath:
        return self.base / 'last_run'

    @property
    def previous(self) -> PurePath:
        return self.base / 'previous'

    @property
    def current(self) -> PurePath:
        return self.base / 'current'

    @property
    def delta(self) -> PurePath:
        return self.base / 'delta'

    @property
    def protected(self) -> PurePath:
        return self.base / 'protected'

    @property
    def lock(self) -> PurePath:
        return self.base / 'lock'

    @property
    def backup_dir(self) -> PurePath:
        return self.base / 'backup'

    @property
    def history_dir(self) -> PurePath:
        return self.base / 'history'

    def history_for(self, timestamp: str) -> PurePath:
        return self.history_dir / timestamp

    @staticmethod
    def relative_backup_for(timestamp: str) -> str:
        """相对于同步目标根目录的备份目录（rsync --backup-dir 使用）"""
        return f'{CONTROL_DIR_NAME}/backup/{timestamp}'


@dataclass
class EndpointSettings:
    """端点设置文件内容"""
    enabled: bool = True
    mode: Optional[Mode] = None


@dataclass(frozen=True)
class SessionOptions:
    """命令行选项"""
    dry_run: bool = False
    verbose: bool = False
    debug: bool = False
    allow_cvsignore_sync: bool = False
    allow_settings_override: bool = False

    def __post_init__(self):
        # 模拟运行总是输出详细信息
        if self.dry_run and not self.verbose:
            object.__setattr__(self, 'verbose', True)


@dataclass(frozen=True)
class Session:
    """一次同步会话，创建后不可修改"""
    primary: Endpoint
    secondary: Endpoint
    options: SessionOptions
    timestamp: str  # 本次同步的标识，用于备份和历史目录
    started_at: float  # timestamp 对应的 epoch 秒
    mode: Mode = Mode.MIRROR

    def with_mode(self, mode: Mode) -> 'Session':
        return replace(self, mode=mode)


@dataclass
class TransferConfig:
    """rsync 配置"""
    rsync_path: str = "rsync"
    common_params: str = "-az"
    timeout: int = 300  # 秒，每次 rsync 调用单独计时
    ssh_command: str = "ssh"
    ssh_timeout: int = 30
    cvs_exclude: bool = False


@dataclass
class LoggingConfig:
    """日志配置"""
    level: str = "WARNING"  # DEBUG, INFO, WARNING, ERROR
    format: str = "auto"  # auto, text, json


@dataclass
class TwinsyncConfig:
    """运行时配置"""
    transfer: TransferConfig = field(default_factory=TransferConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
