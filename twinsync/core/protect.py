"""
保护列表生成器

拉取（从端 -> 主端）时，保护列表中的路径不会被覆盖:
- 控制目录（始终保护）
- 本地快照差异中新增或删除的路径
- 修改时间晚于上次成功同步的文件和符号链接（不含目录）

已知限制: 同一同步窗口内主端修改、从端删除的文件会被保护而不会被删除。
该工具假定两端的修改是交替发生的，不处理同时修改。
"""

import os
import re
from pathlib import Path
from typing import List, Optional
import structlog

from twinsync.config.models import CONTROL_DIR_NAME, ControlPaths, Endpoint, Mode
from twinsync.core.state import Delta

logger = structlog.get_logger()


CONTROL_DIR_PATTERN = f'/{CONTROL_DIR_NAME}'

_WILDCARD_CHARS = re.compile(r'[*?\[]')
_ESCAPE_CHARS = re.compile(r'([\\*?\[])')


def to_exclude_pattern(rel_path: str) -> str:
    """
    将相对路径转换为锚定到同步根目录的 rsync 排除规则

    rsync 只在规则包含通配符时才解释反斜杠转义，因此只在这种情况下转义。
    """
    if _WILDCARD_CHARS.search(rel_path):
        rel_path = _ESCAPE_CHARS.sub(r'\\\1', rel_path)
    return '/' + rel_path.lstrip('/')


class ProtectedSetBuilder:
    """保护列表生成器"""

    def build(
        self,
        endpoint: Endpoint,
        delta: Delta,
        last_run: Optional[float],
        mode: Mode = Mode.FULLDUPLEX
    ) -> List[str]:
        """
        生成保护列表

        Args:
            endpoint: 主端点
            delta: 本次快照差异
            last_run: 上次成功同步的时间（epoch 秒），None 表示从未成功同步
            mode: 同步模式，仅 FULLDUPLEX 会保护本地变化

        Returns:
            rsync 排除规则列表，第一项总是控制目录
        """
        protected = [CONTROL_DIR_PATTERN]
        if mode is not Mode.FULLDUPLEX:
            return protected

        seen = set(protected)

        for path in delta.paths:
            pattern = to_exclude_pattern(path)
            if pattern not in seen:
                seen.add(pattern)
                protected.append(pattern)

        newer_count = 0
        if last_run is not None:
            for path in self.find_newer(Path(endpoint.path), last_run):
                pattern = to_exclude_pattern(path)
                if pattern not in seen:
                    seen.add(pattern)
                    protected.append(pattern)
                    newer_count += 1

        logger.info(
            "Protected set built",
            endpoint=str(endpoint),
            delta_paths=len(delta.entries),
            newer_paths=newer_count,
            total=len(protected)
        )
        return protected

    def find_newer(self, root: Path, since: float) -> List[str]:
        """
        查找修改时间严格晚于 since 的文件和符号链接

        目录是有意的例外，无论其修改时间如何都不会被返回:
        排除一个目录会连同其下的所有内容一起排除，
        而目录的修改时间在增删任意子项时都会变化。
        目录下较新的文件仍会逐个返回；目录本身只有出现在快照差异中时才受保护。
        """
        newer = []

        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = os.path.relpath(dirpath, root)
            if rel_dir == os.curdir:
                prefix = ''
                if CONTROL_DIR_NAME in dirnames:
                    dirnames.remove(CONTROL_DIR_NAME)
            else:
                prefix = rel_dir.replace(os.sep, '/') + '/'

            candidates = list(filenames)
            # 指向目录的符号链接出现在 dirnames 中，os.walk 不会进入
            candidates.extend(d for d in dirnames if os.path.islink(os.path.join(dirpath, d)))

            for name in candidates:
                if rel_dir == os.curdir and name == CONTROL_DIR_NAME:
                    continue
                try:
                    mtime = os.lstat(os.path.join(dirpath, name)).st_mtime
                except OSError:
                    continue
                if mtime > since:
                    newer.append(prefix + name)

        newer.sort()
        return newer

    def write(self, endpoint: Endpoint, protected: List[str]) -> Path:
        """
        写入保护列表工作文件（rsync --exclude-from 使用）

        Returns:
            保护列表文件路径
        """
        path = Path(ControlPaths.for_endpoint(endpoint).protected)
        path.write_text(
            ''.join(p + '\n' for p in protected),
            encoding='utf-8',
            errors='surrogateescape'
        )
        return path
