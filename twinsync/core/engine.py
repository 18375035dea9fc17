"""
同步编排器

功能:
- 每次同步确定一次模式（MIRROR 自动升级为 FULLDUPLEX，或由设置文件指定）
- 在会话锁内依次执行: 快照轮换 -> 差异 -> 保护列表 -> 拉取 -> 推送 -> 收尾
- 无论成功、失败还是中断，锁都会在退出时释放
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple
import structlog

from twinsync.config.models import (
    ControlPaths,
    EndpointSettings,
    Mode,
    Session,
    TwinsyncConfig,
)
from twinsync.config.parser import SettingsParser
from twinsync.core.errors import ComparisonToolFailure
from twinsync.core.history import HistoryRecorder
from twinsync.core.lock import LockManager
from twinsync.core.protect import CONTROL_DIR_PATTERN, ProtectedSetBuilder
from twinsync.core.remote import RemoteShell
from twinsync.core.state import Delta, StateTracker
from twinsync.core.sync_engine import SyncEngine

logger = structlog.get_logger()


class PassState(Enum):
    """单次同步的状态"""
    IDLE = "idle"
    LOCKED = "locked"
    PULLED = "pulled"
    PUSHED = "pushed"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class DirectionPolicy:
    """各模式下拉取和推送的方向策略"""
    pull: bool  # 是否从从端拉取
    pull_delete: bool  # 拉取时主端是否删除从端不存在的条目
    push_delete: bool  # 推送时从端是否删除主端不存在的条目
    masked: bool  # 拉取时是否使用保护列表


DIRECTION_TABLE = {
    Mode.MIRROR: DirectionPolicy(pull=False, pull_delete=False, push_delete=True, masked=False),
    Mode.FULLDUPLEX: DirectionPolicy(pull=True, pull_delete=False, push_delete=True, masked=True),
    Mode.PRIMARY: DirectionPolicy(pull=True, pull_delete=False, push_delete=True, masked=False),
    Mode.SECONDARY: DirectionPolicy(pull=True, pull_delete=True, push_delete=False, masked=False),
}


@dataclass
class PassResult:
    """单次同步的结果"""
    session: Session
    skipped: bool = False
    delta: Delta = field(default_factory=Delta)
    protected: List[str] = field(default_factory=list)
    transfers: List[Tuple[str, dict]] = field(default_factory=list)
    history_dir: Optional[Path] = None

    @property
    def mode(self) -> Mode:
        return self.session.mode


class SyncOrchestrator:
    """同步编排器"""

    def __init__(
        self,
        config: Optional[TwinsyncConfig] = None,
        state_tracker: Optional[StateTracker] = None,
        lock_manager: Optional[LockManager] = None,
        protected_builder: Optional[ProtectedSetBuilder] = None,
        sync_engine: Optional[SyncEngine] = None,
        history: Optional[HistoryRecorder] = None,
        settings_parser: Optional[SettingsParser] = None
    ):
        """
        初始化编排器，未提供的组件按配置创建

        Args:
            config: 运行时配置
        """
        self.config = config or TwinsyncConfig()

        remote_shell = RemoteShell(
            ssh_command=self.config.transfer.ssh_command,
            timeout=self.config.transfer.ssh_timeout
        )
        self.state_tracker = state_tracker or StateTracker(remote_shell)
        self.lock_manager = lock_manager or LockManager()
        self.protected_builder = protected_builder or ProtectedSetBuilder()
        self.sync_engine = sync_engine or SyncEngine(self.config.transfer)
        self.history = history or HistoryRecorder(self.state_tracker)
        self.settings_parser = settings_parser or SettingsParser()

        self.state = PassState.IDLE
        self.transitions: List[PassState] = [PassState.IDLE]

    def run(self, session: Session) -> PassResult:
        """
        执行一次同步

        Args:
            session: 同步会话（初始为 MIRROR 模式）

        Returns:
            PassResult

        Raises:
            LockHeld: 主端点已被锁定
            TransferEngineFailure: rsync 失败
            ComparisonToolFailure: 快照比较失败
        """
        self.state = PassState.IDLE
        self.transitions = [PassState.IDLE]

        with structlog.contextvars.bound_contextvars(
            primary=str(session.primary),
            secondary=str(session.secondary),
            timestamp=session.timestamp,
        ):
            settings = self.load_settings(session)
            if not settings.enabled:
                logger.warning("Sync disabled by settings file, skipping pass")
                return PassResult(session=session, skipped=True)

            session, secondary_initialized = self.resolve_mode(session, settings)

            with self.lock_manager.acquire(session.primary):
                self._transition(PassState.LOCKED)
                # 持锁后才改动从端主机
                if session.options.allow_cvsignore_sync:
                    self.sync_cvsignore(session)
                return self._run_locked(session, secondary_initialized)

    def load_settings(self, session: Session) -> EndpointSettings:
        """读取主端点设置文件"""
        settings_path = Path(ControlPaths.for_endpoint(session.primary).settings)
        return self.settings_parser.parse(settings_path)

    def resolve_mode(self, session: Session, settings: EndpointSettings) -> Tuple[Session, bool]:
        """
        确定本次同步模式，必要时初始化主端点

        Returns:
            (确定模式后的会话, 同步前从端是否已初始化)
        """
        primary_initialized = self.state_tracker.is_initialized(session.primary)
        if not primary_initialized:
            logger.info("Primary not initialized, starting first mirror pass")
            self.state_tracker.initialize(session.primary)

        secondary_initialized = self.state_tracker.is_initialized(session.secondary)

        if session.options.allow_settings_override and settings.mode is not None:
            mode = settings.mode
            logger.info("Mode set by settings file", mode=mode.value)
        elif primary_initialized and secondary_initialized:
            mode = Mode.FULLDUPLEX
        else:
            mode = Mode.MIRROR

        logger.info(
            "Mode resolved",
            mode=mode.value,
            primary_initialized=primary_initialized,
            secondary_initialized=secondary_initialized
        )
        return session.with_mode(mode), secondary_initialized

    def sync_cvsignore(self, session: Session):
        """将本地 ~/.cvsignore 复制到从端主机的主目录"""
        cvsignore = Path.home() / '.cvsignore'

        if not session.secondary.is_remote:
            logger.warning("Secondary is local, ignore file sync not needed")
            return
        if not cvsignore.is_file():
            logger.warning("No ignore file to sync", path=str(cvsignore))
            return
        if session.options.dry_run:
            logger.info("Dry run, ignore file not copied", path=str(cvsignore))
            return

        self.sync_engine.copy_file(str(cvsignore), f'{session.secondary.host}:.cvsignore')

    def _run_locked(self, session: Session, secondary_initialized: bool) -> PassResult:
        """持有锁时执行的同步步骤"""
        primary = session.primary
        options = session.options

        stash = self.state_tracker.stash(primary)

        try:
            result = self._reconcile(session)
        except BaseException:
            # 模拟运行失败时同样不能消费本次同步
            if options.dry_run:
                self.state_tracker.restore(primary, stash)
                logger.warning("Dry run failed, state restored", timestamp=session.timestamp)
            raise

        if options.dry_run:
            self.history.finalize_dry_run(session, stash)
        else:
            result.history_dir = self.history.finalize_commit(session, secondary_initialized)
        self._transition(PassState.FINALIZED)

        return result

    def _reconcile(self, session: Session) -> PassResult:
        """快照、差异、保护列表，然后按模式拉取和推送"""
        primary = session.primary
        options = session.options
        result = PassResult(session=session)

        self.state_tracker.rotate(primary)
        self.state_tracker.capture_current(primary)
        comparison = self.state_tracker.compute_delta(primary)
        if comparison.failed:
            raise ComparisonToolFailure(comparison.error)
        result.delta = comparison.delta

        last_run = self.history.read_last_run(primary)
        result.protected = self.protected_builder.build(primary, comparison.delta, last_run, session.mode)
        protected_file = self.protected_builder.write(primary, result.protected)

        policy = DIRECTION_TABLE[session.mode]
        backup_dir = ControlPaths.relative_backup_for(session.timestamp)

        if policy.pull:
            pull = self.sync_engine.mirror(
                session.secondary,
                primary,
                delete=policy.pull_delete,
                backup_dir=backup_dir,
                excludes=None if policy.masked else [CONTROL_DIR_PATTERN],
                exclude_from=protected_file if policy.masked else None,
                dry_run=options.dry_run,
                verbose=options.verbose,
            )
            result.transfers.append(('pull', pull))
            self._transition(PassState.PULLED)
        else:
            logger.debug("Pull skipped", mode=session.mode.value)

        push = self.sync_engine.mirror(
            primary,
            session.secondary,
            delete=policy.push_delete,
            backup_dir=backup_dir,
            excludes=[CONTROL_DIR_PATTERN],
            dry_run=options.dry_run,
            verbose=options.verbose,
        )
        result.transfers.append(('push', push))
        self._transition(PassState.PUSHED)

        return result

    def _transition(self, state: PassState):
        logger.debug("Pass state", previous=self.state.value, state=state.value)
        self.state = state
        self.transitions.append(state)
