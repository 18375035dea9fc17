"""
端点设置文件解析器

设置文件为纯文本，每行一个 `key value`，目前识别:
    enabled true|false
    mode mirror|fullduplex|primary|secondary
无法识别或格式错误的行会被忽略，不会中断同步。
"""

from pathlib import Path
from typing import Optional
import structlog

from twinsync.config.models import EndpointSettings, Mode

logger = structlog.get_logger()


DEFAULT_SETTINGS_TEXT = "enabled true\n"


class SettingsParser:
    """端点设置文件解析器"""

    def parse(self, settings_path: Path) -> EndpointSettings:
        """
        解析设置文件

        Args:
            settings_path: 设置文件路径

        Returns:
            EndpointSettings 对象；文件不存在或不可读时返回默认值
        """
        try:
            text = settings_path.read_text(encoding='utf-8', errors='replace')
        except FileNotFoundError:
            logger.debug("Settings file not found, using defaults", path=str(settings_path))
            return EndpointSettings()
        except OSError as e:
            logger.warning("Settings file unreadable, using defaults", path=str(settings_path), error=str(e))
            return EndpointSettings()

        return self.parse_text(text)

    def parse_text(self, text: str) -> EndpointSettings:
        """解析设置文本"""
        settings = EndpointSettings()

        for lineno, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line or line.startswith('#'):
                continue

            parts = line.split(None, 1)
            if len(parts) != 2:
                logger.debug("Ignoring malformed settings line", line=lineno, content=line)
                continue

            key, value = parts[0].lower(), parts[1].strip()

            if key == 'enabled':
                enabled = self._parse_bool(value)
                if enabled is None:
                    logger.debug("Ignoring invalid enabled value", line=lineno, value=value)
                else:
                    settings.enabled = enabled
            elif key == 'mode':
                mode = Mode.parse(value)
                if mode is None:
                    logger.debug("Ignoring unknown mode", line=lineno, value=value)
                else:
                    settings.mode = mode
            else:
                logger.debug("Ignoring unknown settings key", line=lineno, key=key)

        return settings

    def _parse_bool(self, value: str) -> Optional[bool]:
        """解析布尔值"""
        lowered = value.lower()
        if lowered in ('true', 'yes', '1', 'on'):
            return True
        if lowered in ('false', 'no', '0', 'off'):
            return False
        return None
