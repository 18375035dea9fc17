"""
Twinsync CLI Entry Point
"""

import signal
import sys
import click
import structlog

from twinsync import __version__
from twinsync.config.models import SessionOptions, TwinsyncConfig
from twinsync.core.engine import SyncOrchestrator
from twinsync.core.errors import LockHeld, SessionInterrupted
from twinsync.core.locator import build_session
from twinsync.utils.logger import level_for, setup_logging

logger = structlog.get_logger()


def _raise_interrupted(signum, frame):
    raise SessionInterrupted(signum)


@click.command(context_settings={'help_option_names': ['-h', '--help']})
@click.option(
    '-c', 'allow_cvsignore',
    is_flag=True,
    help='将 ~/.cvsignore 同步到目标主机，并在传输时应用'
)
@click.option(
    '-d', 'debug',
    is_flag=True,
    help='输出调试日志'
)
@click.option(
    '-n', 'dry_run',
    is_flag=True,
    help='模拟运行，不修改任何文件（隐含 -v）'
)
@click.option(
    '-o', 'allow_override',
    is_flag=True,
    help='允许源目录的设置文件覆盖同步模式'
)
@click.option(
    '-v', 'verbose',
    is_flag=True,
    help='输出详细信息'
)
@click.argument('source_dir', required=False)
@click.argument('target_uri', required=False)
@click.version_option(version=__version__, prog_name='twinsync')
@click.pass_context
def main(
    ctx: click.Context,
    allow_cvsignore: bool,
    debug: bool,
    dry_run: bool,
    allow_override: bool,
    verbose: bool,
    source_dir: str,
    target_uri: str
):
    """
    Twinsync - 基于 rsync 的双目录同步工具

    TARGET_URI 格式为 [host:]path。

    示例:

    \b
    # 首次同步（镜像到目标），之后自动进入双向模式
    twinsync ~/docs backup-host:/srv/docs

    \b
    # 模拟运行，查看将要传输的文件
    twinsync -n ~/docs backup-host:/srv/docs

    \b
    # 本地两个目录之间同步，输出调试日志
    twinsync -d /data/a /data/b
    """
    if not source_dir or not target_uri:
        click.echo(ctx.get_help())
        ctx.exit(0)

    options = SessionOptions(
        dry_run=dry_run,
        verbose=verbose,
        debug=debug,
        allow_cvsignore_sync=allow_cvsignore,
        allow_settings_override=allow_override,
    )

    config = TwinsyncConfig()
    config.logging.level = level_for(debug, options.verbose)
    config.transfer.cvs_exclude = allow_cvsignore
    setup_logging(config.logging.level, config.logging.format)

    try:
        session = build_session(source_dir, target_uri, options)
    except ValueError as e:
        logger.error("Invalid arguments", error=str(e))
        sys.exit(1)

    logger.info(
        "Twinsync starting",
        version=__version__,
        primary=str(session.primary),
        secondary=str(session.secondary),
        dry_run=options.dry_run
    )

    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupted)
    try:
        orchestrator = SyncOrchestrator(config)
        result = orchestrator.run(session)
    except LockHeld as e:
        logger.error("Another session holds the lock", lock=e.lock_path, owner=e.owner)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.error("Interrupted, session aborted")
        sys.exit(1)
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if options.verbose:
        for direction, transfer in result.transfers:
            output = transfer.get('output', '').strip()
            if output:
                click.echo(f"[{direction}]")
                click.echo(output)

    logger.info(
        "Twinsync finished",
        mode=result.mode.value,
        skipped=result.skipped,
        changes=len(result.delta.entries),
        protected=len(result.protected)
    )


if __name__ == '__main__':
    main()
