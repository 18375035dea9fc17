"""
Rsync 传输引擎

功能:
- 构建 rsync 命令（删除、排除、备份、超时）
- 同步执行 rsync 并收集输出
- 失败时抛出 TransferEngineFailure，不重试
"""

import shlex
import subprocess
from pathlib import Path
from typing import List, Optional
import structlog

from twinsync.config.models import Endpoint, TransferConfig
from twinsync.core.errors import TransferEngineFailure

logger = structlog.get_logger()


# rsync: 传输过程中部分源文件消失
RSYNC_VANISHED_CODE = 24


class SyncEngine:
    """Rsync 传输引擎"""

    def __init__(self, config: TransferConfig):
        """
        初始化传输引擎

        Args:
            config: rsync 配置
        """
        self.config = config

        self.stats = {
            'total_runs': 0,
            'success_runs': 0,
            'failed_runs': 0,
        }

    def mirror(
        self,
        source: Endpoint,
        dest: Endpoint,
        delete: bool = False,
        backup_dir: Optional[str] = None,
        excludes: Optional[List[str]] = None,
        exclude_from: Optional[Path] = None,
        dry_run: bool = False,
        verbose: bool = False
    ) -> dict:
        """
        将源目录内容镜像到目标目录

        Args:
            source: 源端点
            dest: 目标端点
            delete: 是否删除目标中源不存在的条目
            backup_dir: 备份目录（相对于目标根目录），被覆盖或删除的文件放在这里
            excludes: 排除规则
            exclude_from: 排除规则文件
            dry_run: 模拟运行
            verbose: 详细输出

        Returns:
            执行结果字典

        Raises:
            TransferEngineFailure: rsync 失败
        """
        cmd = self.build_command(
            source,
            dest,
            delete=delete,
            backup_dir=backup_dir,
            excludes=excludes,
            exclude_from=exclude_from,
            dry_run=dry_run,
            verbose=verbose,
        )

        logger.info(
            "Executing rsync",
            source=str(source),
            dest=str(dest),
            delete=delete,
            dry_run=dry_run
        )
        return self._run(cmd)

    def copy_file(self, source: str, dest: str, remote: bool = True) -> dict:
        """
        复制单个文件（用于同步辅助的忽略文件）

        Args:
            source: 本地文件路径
            dest: 目标地址，`host:path` 或本地路径
            remote: 目标是否为远程地址
        """
        cmd = [self.config.rsync_path]
        cmd.extend(shlex.split(self.config.common_params))
        cmd.append(f'--timeout={self.config.timeout}')
        if remote:
            cmd.extend(['-e', self.config.ssh_command])
        cmd.extend([source, dest])

        logger.info("Copying file", source=source, dest=dest)
        return self._run(cmd)

    def build_command(
        self,
        source: Endpoint,
        dest: Endpoint,
        delete: bool = False,
        backup_dir: Optional[str] = None,
        excludes: Optional[List[str]] = None,
        exclude_from: Optional[Path] = None,
        dry_run: bool = False,
        verbose: bool = False
    ) -> List[str]:
        """
        构建 rsync 命令

        Returns:
            命令列表
        """
        cmd = [self.config.rsync_path]

        # 通用参数
        cmd.extend(shlex.split(self.config.common_params))

        # 超时（每次调用单独计算）
        cmd.append(f'--timeout={self.config.timeout}')

        if source.is_remote or dest.is_remote:
            cmd.extend(['-e', self.config.ssh_command])

        if dry_run:
            cmd.extend(['--dry-run', '--itemize-changes'])
        if verbose:
            cmd.append('--verbose')

        if delete:
            cmd.append('--delete')

        if backup_dir:
            cmd.extend(['--backup', f'--backup-dir={backup_dir}'])

        if self.config.cvs_exclude:
            cmd.append('--cvs-exclude')

        for pattern in excludes or []:
            cmd.append(f'--exclude={pattern}')

        if exclude_from is not None:
            cmd.append(f'--exclude-from={exclude_from}')

        cmd.extend([source.rsync_location(), dest.rsync_location()])
        return cmd

    def _run(self, cmd: List[str]) -> dict:
        """执行 rsync 命令"""
        self.stats['total_runs'] += 1
        logger.debug("rsync command", command=cmd)

        try:
            process = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            self.stats['failed_runs'] += 1
            logger.error("rsync could not be started", command=cmd[0], error=str(e))
            raise TransferEngineFailure(cmd, reason=str(e)) from e

        stdout_text = process.stdout.decode('utf-8', errors='replace')
        stderr_text = process.stderr.decode('utf-8', errors='replace')
        success = process.returncode == 0

        if process.returncode == RSYNC_VANISHED_CODE:
            logger.warning(
                "Some source files vanished during transfer",
                stderr=stderr_text[:500]
            )
            success = True

        if not success:
            self.stats['failed_runs'] += 1
            logger.error(
                "Rsync failed",
                returncode=process.returncode,
                stderr=stderr_text[:500]
            )
            raise TransferEngineFailure(cmd, process.returncode, stderr_text)

        self.stats['success_runs'] += 1
        logger.debug("Rsync completed successfully", returncode=process.returncode)

        return {
            'success': True,
            'returncode': process.returncode,
            'output': stdout_text,
            'error': stderr_text,
        }

    def get_stats(self) -> dict:
        """获取统计信息"""
        return dict(self.stats)
