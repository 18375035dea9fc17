"""
日志系统配置
"""

import sys
import logging
import structlog


LOG_LEVEL_MAP = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}


def setup_logging(level: str = "WARNING", log_format: str = "auto"):
    """
    配置结构化日志系统，所有日志输出到标准错误

    Args:
        level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        log_format: 日志格式 (auto, text, json)，auto 在终端上使用 text
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if log_format == "json" or (log_format == "auto" and not sys.stderr.isatty()):
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            LOG_LEVEL_MAP.get(level.upper(), logging.WARNING)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    return structlog.get_logger()


def level_for(debug: bool, verbose: bool) -> str:
    """根据命令行选项确定日志级别"""
    if debug:
        return 'DEBUG'
    if verbose:
        return 'INFO'
    return 'WARNING'
