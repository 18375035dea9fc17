"""
状态跟踪器

功能:
- 初始化端点控制目录（本地或通过 ssh 远程）
- 生成目录快照（文件、目录、符号链接的相对路径列表）
- 轮换 previous/current 快照
- 计算两次快照之间的差异
"""

import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import structlog

from twinsync.config.models import CONTROL_DIR_NAME, ControlPaths, Endpoint
from twinsync.config.parser import DEFAULT_SETTINGS_TEXT
from twinsync.core.errors import RemoteUnreachable
from twinsync.core.remote import RemoteShell

logger = structlog.get_logger()


# 文件名中的任意字节都需要原样写回快照
SNAPSHOT_ENCODING = 'utf-8'
SNAPSHOT_ERRORS = 'surrogateescape'


class DeltaTag(Enum):
    """差异条目类型"""
    ADDED = "+"
    REMOVED = "-"


@dataclass(frozen=True)
class DeltaEntry:
    """一条差异"""
    tag: DeltaTag
    path: str

    def to_line(self) -> str:
        return f"{self.tag.value} {self.path}"

    @classmethod
    def from_line(cls, line: str) -> 'DeltaEntry':
        tag, _, path = line.partition(' ')
        return cls(DeltaTag(tag), path)


@dataclass
class Delta:
    """previous 与 current 快照之间的对称差"""
    entries: List[DeltaEntry] = field(default_factory=list)

    @classmethod
    def between(cls, previous: Iterable[str], current: Iterable[str]) -> 'Delta':
        """
        计算差异

        Args:
            previous: 上次快照
            current: 本次快照

        Returns:
            按路径排序的 Delta
        """
        previous_set = set(previous)
        current_set = set(current)

        entries = [DeltaEntry(DeltaTag.REMOVED, p) for p in previous_set - current_set]
        entries.extend(DeltaEntry(DeltaTag.ADDED, p) for p in current_set - previous_set)
        entries.sort(key=lambda e: (e.path, e.tag.value))
        return cls(entries)

    @property
    def added(self) -> List[str]:
        return [e.path for e in self.entries if e.tag is DeltaTag.ADDED]

    @property
    def removed(self) -> List[str]:
        return [e.path for e in self.entries if e.tag is DeltaTag.REMOVED]

    @property
    def paths(self) -> List[str]:
        return [e.path for e in self.entries]

    def is_empty(self) -> bool:
        return not self.entries

    def to_text(self) -> str:
        return ''.join(e.to_line() + '\n' for e in self.entries)

    @classmethod
    def from_text(cls, text: str) -> 'Delta':
        return cls([DeltaEntry.from_line(line) for line in text.splitlines() if line])


class ComparisonOutcome(Enum):
    """快照比较结果"""
    NO_DIFFERENCE = "no_difference"
    DIFFERENCES_FOUND = "differences_found"
    TOOL_FAILURE = "tool_failure"


@dataclass
class ComparisonResult:
    """
    快照比较结果

    发现差异是正常结果，只有 TOOL_FAILURE 表示比较本身出错。
    """
    outcome: ComparisonOutcome
    delta: Delta = field(default_factory=Delta)
    error: Optional[str] = None

    @classmethod
    def from_delta(cls, delta: Delta) -> 'ComparisonResult':
        if delta.is_empty():
            return cls(ComparisonOutcome.NO_DIFFERENCE, delta)
        return cls(ComparisonOutcome.DIFFERENCES_FOUND, delta)

    @classmethod
    def failure(cls, error: str) -> 'ComparisonResult':
        return cls(ComparisonOutcome.TOOL_FAILURE, Delta(), error)

    @property
    def failed(self) -> bool:
        return self.outcome is ComparisonOutcome.TOOL_FAILURE


class StateTracker:
    """状态跟踪器"""

    # 模拟运行前需要保存并恢复的工作文件
    STASHED_FILES = ('previous', 'current', 'delta')

    def __init__(self, remote_shell: Optional[RemoteShell] = None):
        """
        Args:
            remote_shell: 远程命令执行器，用于远程端点的探测和初始化
        """
        self.remote_shell = remote_shell or RemoteShell()

    # ------------------------------------------------------------------
    # 初始化
    # ------------------------------------------------------------------

    def is_initialized(self, endpoint: Endpoint) -> bool:
        """
        检查端点是否已初始化（设置文件是否存在）

        远程探测失败视为未初始化。
        """
        paths = ControlPaths.for_endpoint(endpoint)

        if not endpoint.is_remote:
            return Path(paths.settings).is_file()

        try:
            result = self.remote_shell.run(endpoint.host, ['test', '-f', str(paths.settings)])
        except RemoteUnreachable as e:
            logger.warning("Remote probe failed, treating as uninitialized", endpoint=str(endpoint), error=str(e))
            return False

        return result.returncode == 0

    def initialize(self, endpoint: Endpoint):
        """
        初始化端点控制目录，可重复调用

        Raises:
            RemoteUnreachable: 远程初始化命令失败
        """
        paths = ControlPaths.for_endpoint(endpoint)

        if endpoint.is_remote:
            self._initialize_remote(endpoint, paths)
        else:
            Path(paths.backup_dir).mkdir(parents=True, exist_ok=True)
            Path(paths.history_dir).mkdir(parents=True, exist_ok=True)
            settings = Path(paths.settings)
            if not settings.exists():
                settings.write_text(DEFAULT_SETTINGS_TEXT)

        logger.info("Endpoint initialized", endpoint=str(endpoint))

    def _initialize_remote(self, endpoint: Endpoint, paths: ControlPaths):
        """通过 ssh 初始化远程控制目录"""
        settings = shlex.quote(str(paths.settings))
        script = (
            f"mkdir -p {shlex.quote(str(paths.backup_dir))} {shlex.quote(str(paths.history_dir))}"
            f" && {{ [ -f {settings} ] || printf %s {shlex.quote(DEFAULT_SETTINGS_TEXT)} > {settings}; }}"
        )
        result = self.remote_shell.run_shell(endpoint.host, script)
        if result.returncode != 0:
            stderr_text = result.stderr.decode('utf-8', errors='ignore')
            raise RemoteUnreachable(endpoint.host, f"initialization failed: {stderr_text.strip()}")

    # ------------------------------------------------------------------
    # 快照
    # ------------------------------------------------------------------

    def rotate(self, endpoint: Endpoint) -> bool:
        """
        将上次的 current 快照改名为 previous

        Returns:
            本次是否存在 previous 快照
        """
        paths = self._local_paths(endpoint)
        current = Path(paths.current)
        previous = Path(paths.previous)

        if current.exists():
            os.replace(current, previous)
            return True

        # 首次同步：没有可比较的上次快照
        if previous.exists():
            previous.unlink()
        return False

    def capture_current(self, endpoint: Endpoint) -> List[str]:
        """
        遍历端点目录并写入 current 快照

        Returns:
            快照中的相对路径列表
        """
        paths = self._local_paths(endpoint)
        entries = self.walk(Path(endpoint.path))
        self._write_lines(Path(paths.current), entries)

        logger.debug("Snapshot captured", endpoint=str(endpoint), entries=len(entries))
        return entries

    def walk(self, root: Path) -> List[str]:
        """
        列出目录下所有文件、目录和符号链接（不跟随链接，排除控制目录）

        Returns:
            排序后的 POSIX 风格相对路径
        """
        entries = []

        def _on_error(error: OSError):
            logger.warning("Cannot read directory", path=error.filename, error=error.strerror)

        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error):
            rel_dir = os.path.relpath(dirpath, root)
            if rel_dir == os.curdir:
                prefix = ''
                if CONTROL_DIR_NAME in dirnames:
                    dirnames.remove(CONTROL_DIR_NAME)
                filenames = [n for n in filenames if n != CONTROL_DIR_NAME]
            else:
                prefix = rel_dir.replace(os.sep, '/') + '/'

            dirnames.sort()
            for name in dirnames + filenames:
                if '\n' in name:
                    logger.warning("Skipping entry with newline in name", path=os.path.join(dirpath, name))
                    continue
                entries.append(prefix + name)

        entries.sort()
        return entries

    def read_snapshot(self, snapshot_path: Path) -> List[str]:
        """读取快照文件"""
        text = snapshot_path.read_text(encoding=SNAPSHOT_ENCODING, errors=SNAPSHOT_ERRORS)
        return [line for line in text.splitlines() if line]

    # ------------------------------------------------------------------
    # 差异
    # ------------------------------------------------------------------

    def compute_delta(self, endpoint: Endpoint) -> ComparisonResult:
        """
        比较 previous 与 current 快照，并写入 delta 文件

        没有 previous 快照时差异为空。
        """
        paths = self._local_paths(endpoint)
        previous = Path(paths.previous)
        delta_file = Path(paths.delta)

        if not previous.exists():
            delta = Delta()
        else:
            try:
                delta = Delta.between(
                    self.read_snapshot(previous),
                    self.read_snapshot(Path(paths.current))
                )
            except OSError as e:
                logger.error("Snapshot comparison failed", endpoint=str(endpoint), error=str(e))
                return ComparisonResult.failure(str(e))

        try:
            delta_file.write_text(delta.to_text(), encoding=SNAPSHOT_ENCODING, errors=SNAPSHOT_ERRORS)
        except OSError as e:
            logger.error("Cannot write delta", path=str(delta_file), error=str(e))
            return ComparisonResult.failure(str(e))

        result = ComparisonResult.from_delta(delta)
        logger.info(
            "Delta computed",
            endpoint=str(endpoint),
            outcome=result.outcome.value,
            added=len(delta.added),
            removed=len(delta.removed)
        )
        return result

    # ------------------------------------------------------------------
    # 模拟运行支持
    # ------------------------------------------------------------------

    def stash(self, endpoint: Endpoint) -> Dict[str, Optional[bytes]]:
        """保存工作文件的原始内容（不存在记为 None）"""
        paths = self._local_paths(endpoint)
        stash = {}
        for name in self.STASHED_FILES:
            path = Path(getattr(paths, name))
            stash[name] = path.read_bytes() if path.exists() else None
        return stash

    def restore(self, endpoint: Endpoint, stash: Dict[str, Optional[bytes]]):
        """恢复 stash() 保存的工作文件"""
        paths = self._local_paths(endpoint)
        for name, content in stash.items():
            path = Path(getattr(paths, name))
            if content is None:
                if path.exists():
                    path.unlink()
            else:
                path.write_bytes(content)
        logger.debug("Working state restored", endpoint=str(endpoint))

    def _local_paths(self, endpoint: Endpoint) -> ControlPaths:
        if endpoint.is_remote:
            raise ValueError(f"Snapshots are only kept for local endpoints, got {endpoint}")
        return ControlPaths.for_endpoint(endpoint)

    def _write_lines(self, path: Path, lines: List[str]):
        path.write_text(
            ''.join(line + '\n' for line in lines),
            encoding=SNAPSHOT_ENCODING,
            errors=SNAPSHOT_ERRORS
        )
