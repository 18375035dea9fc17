"""
远程命令执行

通过 ssh 在远程端点上执行探测和初始化命令，假定已配置免密登录。
"""

import shlex
import subprocess
from typing import List
import structlog

from twinsync.core.errors import RemoteUnreachable

logger = structlog.get_logger()


# ssh 自身出错（连接失败、认证失败）时的退出码
SSH_ERROR_CODE = 255


class RemoteShell:
    """远程 shell"""

    def __init__(self, ssh_command: str = "ssh", timeout: int = 30):
        """
        Args:
            ssh_command: ssh 命令（可带参数）
            timeout: 单次命令超时（秒）
        """
        self.ssh_command = ssh_command
        self.timeout = timeout

    def build_command(self, host: str, argv: List[str]) -> List[str]:
        """构建 ssh 命令"""
        cmd = shlex.split(self.ssh_command)
        cmd.extend(['-o', 'BatchMode=yes', host, shlex.join(argv)])
        return cmd

    def run(self, host: str, argv: List[str]) -> subprocess.CompletedProcess:
        """
        在远程主机上执行命令

        Args:
            host: 远程主机
            argv: 远程命令参数列表（会被安全引用）

        Returns:
            CompletedProcess，远程命令本身的非零退出码不视为错误

        Raises:
            RemoteUnreachable: ssh 无法执行、超时或连接失败
        """
        cmd = self.build_command(host, argv)
        logger.debug("Executing remote command", host=host, command=argv)

        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise RemoteUnreachable(host, f"ssh not available: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise RemoteUnreachable(host, f"timed out after {self.timeout}s") from e

        if result.returncode == SSH_ERROR_CODE:
            stderr_text = result.stderr.decode('utf-8', errors='ignore')
            logger.warning("Remote command failed to connect", host=host, stderr=stderr_text[:500])
            raise RemoteUnreachable(host, stderr_text.strip())

        return result

    def run_shell(self, host: str, script: str) -> subprocess.CompletedProcess:
        """在远程主机上执行一段 shell 脚本"""
        return self.run(host, ['sh', '-c', script])
