"""
Sync orchestration -- one environment at a time, one target at a time.

A run for one environment goes: load (decrypt) -> .env.local + links (dev
only) -> typegen -> Convex -> each Wrangler worker. Environments run one
after another, and a failure in one never stops the next.

Watch mode does an initial run per environment, then re-runs a single
environment whenever its env file changes.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .backends import BackendError, ConvexCLI, ValueOpaqueStore, ValueVisibleStore, WranglerCLI, read_wrangler_environments
from .config import Config, ConfigError, WranglerSyncConfig
from .inference import count_scopes, parse_env_vars
from .loader import KEYS_FILE, DotenvxCLI, EnvFileError, get_env_file_path, load_env_file
from .scaffold import LOCAL_ENV_FILE, Step, link_local_env, write_local_env
from .syncer import ConvexSyncer, SyncOutcome, WranglerSyncer
from .typegen import LAZY_TS_CONTENT, generate_types

logger = logging.getLogger("envtool.core.orchestrator")

WranglerFactory = Callable[[WranglerSyncConfig], ValueOpaqueStore]


@dataclass
class EnvRunReport:
    """Everything one environment's run did or would do."""
    env: str
    env_path: str
    dry_run: bool = False
    steps: List[Step] = field(default_factory=list)
    outcomes: List[SyncOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None or any(outcome.failed for outcome in self.outcomes)


class SyncRunner:
    """
    Runs the sync pipeline for a project.

    Remote stores are injected; by default the Convex and Wrangler command
    line tools are used.
    """

    def __init__(
        self,
        config: Config,
        cwd: Optional[Path] = None,
        convex_store: Optional[ValueVisibleStore] = None,
        wrangler_factory: Optional[WranglerFactory] = None,
        decryptor: Optional[DotenvxCLI] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config = config
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self.convex_store = convex_store
        self.wrangler_factory = wrangler_factory or self._default_wrangler_store
        self.decryptor = decryptor
        self.environ = environ
        self._wrangler_syncers: Optional[List[WranglerSyncer]] = None

    def _default_wrangler_store(self, target: WranglerSyncConfig) -> ValueOpaqueStore:
        return WranglerCLI(str(self.cwd / target.config_path))

    def env_path(self, env: str) -> Path:
        return self.cwd / get_env_file_path(self.config, env)

    def convex_syncer(self) -> Optional[ConvexSyncer]:
        sync = self.config.sync
        if not sync or sync.convex is None:
            return None
        store = self.convex_store or ConvexCLI(cwd=self.cwd)
        return ConvexSyncer(store, sync.convex)

    def wrangler_syncers(self) -> List[WranglerSyncer]:
        if self._wrangler_syncers is None:
            targets = self.config.sync.wrangler_targets() if self.config.sync else []
            self._wrangler_syncers = [
                WranglerSyncer(
                    self.wrangler_factory(target),
                    target,
                    read_wrangler_environments(str(self.cwd / target.config_path)),
                )
                for target in targets
            ]
        return self._wrangler_syncers

    def preflight(self, envs: List[str]) -> None:
        """
        Check every Wrangler environment mapping before any remote call.

        Raises:
            ConfigError: If a worker with named environments has no mapping
                for one of ``envs``
        """
        for syncer in self.wrangler_syncers():
            for env in envs:
                syncer.resolve_remote_env(env)

    def _write_local_env(self, record: Dict[str, str], report: EnvRunReport) -> None:
        if report.dry_run:
            report.steps.append(("dry-run", f"would decrypt to {LOCAL_ENV_FILE}"))
            for link_dir in self.config.links:
                report.steps.append(("dry-run", f"would link {link_dir}/{LOCAL_ENV_FILE}"))
            return

        write_local_env(record, self.cwd)
        report.steps.append(("created", f"decrypted {LOCAL_ENV_FILE}"))
        report.steps.extend(link_local_env(self.cwd, self.config.links))

    def _typegen(self, record: Dict[str, str], report: EnvRunReport) -> None:
        typegen = self.config.typegen
        env_vars = parse_env_vars(record, typegen.public_prefix)
        counts = count_scopes(env_vars)
        summary = f"{counts['public']} public, {counts['private']} private"

        if report.dry_run:
            report.steps.append(("dry-run", f"would generate types to {typegen.output} ({summary})"))
            return

        output = self.cwd / typegen.output
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(generate_types(env_vars, typegen))
        report.steps.append(("created", f"typegen {typegen.output} ({summary})"))

        if typegen.schema_lib != "none":
            lazy_path = output.parent / "lazy.ts"
            if not lazy_path.exists():
                lazy_path.write_text(LAZY_TS_CONTENT)
                report.steps.append(("created", f"injected {lazy_path.relative_to(self.cwd)}"))

    def run_env(self, env: str, dry_run: bool = False) -> EnvRunReport:
        """
        Run the full pipeline for one environment.

        Errors are recorded on the report instead of raised, so callers
        can move on to the next environment.
        """
        env_path = self.env_path(env)
        report = EnvRunReport(env=env, env_path=get_env_file_path(self.config, env), dry_run=dry_run)

        try:
            record = load_env_file(
                str(env_path), str(self.cwd / KEYS_FILE), self.decryptor, self.environ
            )

            if env == "dev":
                self._write_local_env(record, report)

            if self.config.typegen:
                self._typegen(record, report)

            convex = self.convex_syncer()
            if convex:
                report.outcomes.append(convex.sync(record, env, dry_run))

            for wrangler in self.wrangler_syncers():
                report.outcomes.append(wrangler.sync(record, env, dry_run))
        except (EnvFileError, ConfigError, BackendError, OSError) as e:
            logger.debug("%s run failed", env, exc_info=True)
            report.error = str(e)
        except Exception as e:
            # later envs and the watch thread keep running
            logger.warning("%s run failed unexpectedly", env, exc_info=True)
            report.error = f"{type(e).__name__}: {e}"

        return report

    def run(self, envs: List[str], dry_run: bool = False) -> List[EnvRunReport]:
        return [self.run_env(env, dry_run) for env in envs]

    def watch(
        self,
        envs: List[str],
        dry_run: bool = False,
        on_report: Optional[Callable[[EnvRunReport], None]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Run once per environment, then re-run on every env file change.

        Blocks until ``stop_event`` is set (forever when not given).
        """
        on_report = on_report or (lambda report: None)

        for env in envs:
            on_report(self.run_env(env, dry_run))

        observer = Observer()
        for env in envs:
            handler = EnvFileHandler(
                self.env_path(env),
                lambda env=env: on_report(self.run_env(env, dry_run)),
            )
            observer.schedule(handler, str(handler.path.parent), recursive=False)

        stop = stop_event or threading.Event()
        observer.start()
        try:
            stop.wait()
        finally:
            observer.stop()
            observer.join()


class EnvFileHandler(FileSystemEventHandler):
    """Calls back when one specific file is written or replaced."""

    def __init__(self, path: Path, callback: Callable[[], None]):
        super().__init__()
        self.path = Path(path).resolve()
        self.callback = callback

    def _matches(self, src_path) -> bool:
        return Path(str(src_path)).resolve() == self.path

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            logger.debug("change detected: %s", self.path)
            self.callback()

    def on_created(self, event: FileSystemEvent) -> None:
        self.on_modified(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Editors that save atomically rename a temp file over the original
        if not event.is_directory and self._matches(event.dest_path):
            logger.debug("replaced: %s", self.path)
            self.callback()
