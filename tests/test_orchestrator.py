"""
Tests for the sync pipeline (per-environment orchestration and watch mode).
"""

import threading

import pytest
from watchdog.events import DirModifiedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from envtool.core.config import ConfigError, parse_config
from envtool.core.orchestrator import EnvFileHandler, SyncRunner


WRANGLER_MULTI_ENV = """{
  "name": "api",
  // named environments
  "env": {"staging": {}, "production": {}},
}"""


@pytest.fixture
def project(tmp_path):
    (tmp_path / ".env.development").write_text("DOTENV_PUBLIC_KEY_DEVELOPMENT=03ab\nAPI_URL=https://dev.example.com\nVITE_NAME=demo\n")
    (tmp_path / ".env.production").write_text("API_URL=https://example.com\nSECRET=s3cret\n")
    return tmp_path


def make_runner(project, config, convex=None, wrangler=None):
    return SyncRunner(
        parse_config(config),
        cwd=project,
        convex_store=convex,
        wrangler_factory=(lambda target: wrangler) if wrangler is not None else None,
        environ={},
    )


class TestRunEnv:
    """Test a single environment's pipeline."""

    def test_dev_writes_local_env_and_types(self, project, convex_store):
        config = {
            "typegen": {"output": "src/env.ts", "schema": "valibot"},
            "sync": {"convex": {}},
        }
        report = make_runner(project, config, convex=convex_store).run_env("dev")

        assert report.error is None
        assert (project / ".env.local").read_text() == "API_URL=https://dev.example.com\nVITE_NAME=demo\n"
        assert "publicEnvSchema" in (project / "src" / "env.ts").read_text()
        assert (project / "src" / "lazy.ts").exists()
        assert convex_store.envs["dev"] == {"API_URL": "https://dev.example.com", "VITE_NAME": "demo"}

    def test_lazy_helper_is_not_overwritten(self, project):
        (project / "src").mkdir()
        (project / "src" / "lazy.ts").write_text("// mine\n")
        config = {"typegen": {"output": "src/env.ts"}}

        make_runner(project, config).run_env("dev")

        assert (project / "src" / "lazy.ts").read_text() == "// mine\n"

    def test_no_lazy_helper_for_plain_types(self, project):
        make_runner(project, {"typegen": {"output": "env.ts", "schema": "none"}}).run_env("prod")

        assert (project / "env.ts").exists()
        assert not (project / "lazy.ts").exists()

    def test_prod_does_not_write_local_env(self, project, convex_store):
        report = make_runner(project, {"sync": {"convex": {}}}, convex=convex_store).run_env("prod")

        assert not (project / ".env.local").exists()
        assert report.outcomes[0].env == "prod"
        assert convex_store.envs["prod"] == {"API_URL": "https://example.com", "SECRET": "s3cret"}

    def test_links_local_env(self, project):
        (project / "apps" / "web").mkdir(parents=True)
        config = {"sync": {"links": ["apps/web"]}}

        report = make_runner(project, config).run_env("dev")

        assert (project / "apps" / "web" / ".env.local").is_symlink()
        assert any("apps/web" in message for _, message in report.steps)

    def test_dry_run_writes_nothing(self, project, make_convex):
        store = make_convex({"OLD": "1"}, env="dev")
        config = {"typegen": {"output": "src/env.ts"}, "sync": {"convex": {}}}

        report = make_runner(project, config, convex=store).run_env("dev", dry_run=True)

        assert not (project / ".env.local").exists()
        assert not (project / "src").exists()
        assert [call[0] for call in store.calls] == ["list"]
        assert report.outcomes[0].diff.removed == ["OLD"]
        assert all(status == "dry-run" for status, _ in report.steps)

    def test_convex_runs_before_wrangler(self, project, convex_store, wrangler_store, call_log):
        config = {"sync": {"convex": {}, "wrangler": {"config": "./wrangler.jsonc"}}}
        make_runner(project, config, convex=convex_store, wrangler=wrangler_store).run_env("prod")

        targets = [entry[0] for entry in call_log]
        assert targets == ["convex", "convex", "wrangler", "wrangler"]

    def test_exclusions_apply_per_target(self, project, convex_store, wrangler_store):
        config = {
            "sync": {
                "convex": {"exclude": ["SECRET"]},
                "wrangler": {"config": "./wrangler.jsonc", "exclude": ["API_*"]},
            }
        }
        make_runner(project, config, convex=convex_store, wrangler=wrangler_store).run_env("prod")

        assert convex_store.envs["prod"] == {"API_URL": "https://example.com"}
        assert wrangler_store.envs[None] == {"SECRET": "s3cret"}

    def test_missing_env_file_is_reported(self, tmp_path, convex_store):
        report = make_runner(tmp_path, {"sync": {"convex": {}}}, convex=convex_store).run_env("dev")

        assert report.failed
        assert "File not found" in report.error
        assert convex_store.calls == []

    def test_target_failure_marks_report_failed(self, project, make_convex):
        store = make_convex(fail_write=True)
        report = make_runner(project, {"sync": {"convex": {}}}, convex=store).run_env("prod")

        assert report.error is None
        assert report.failed


class TestRun:
    """Test multi-environment runs."""

    def test_failure_in_one_env_does_not_stop_the_next(self, project, convex_store):
        (project / ".env.development").unlink()
        reports = make_runner(project, {"sync": {"convex": {}}}, convex=convex_store).run(["dev", "prod"])

        assert [report.env for report in reports] == ["dev", "prod"]
        assert reports[0].failed
        assert not reports[1].failed
        assert convex_store.envs["prod"]

    def test_undecodable_env_file_does_not_stop_the_next(self, project, convex_store):
        (project / ".env.development").write_bytes(b"API=\xff\xfe\n")
        (project / ".env.production").write_text("API=ok\n")

        reports = make_runner(project, {"sync": {"convex": {}}}, convex=convex_store).run(["dev", "prod"])

        assert [report.env for report in reports] == ["dev", "prod"]
        assert "Cannot read" in reports[0].error
        assert not reports[1].failed
        assert convex_store.envs["prod"] == {"API": "ok"}

    def test_unexpected_error_is_captured(self, project, make_convex):
        class BrokenStore(make_convex):
            def list_secrets(self, env):
                raise RuntimeError("cli crashed")

        reports = make_runner(project, {"sync": {"convex": {}}}, convex=BrokenStore()).run(["dev", "prod"])

        assert [report.error for report in reports] == ["RuntimeError: cli crashed"] * 2

    def test_unmapped_multi_env_worker_fails_each_env(self, project, wrangler_store):
        (project / "wrangler.jsonc").write_text(WRANGLER_MULTI_ENV)
        config = {"sync": {"wrangler": {"config": "./wrangler.jsonc"}}}

        reports = make_runner(project, config, wrangler=wrangler_store).run(["dev", "prod"])

        assert all("envMapping" in report.error for report in reports)
        assert wrangler_store.calls == []


class TestPreflight:
    """Test the mapping check that runs before any remote call."""

    def test_rejects_multi_env_without_mapping(self, project, convex_store, wrangler_store):
        (project / "wrangler.jsonc").write_text(WRANGLER_MULTI_ENV)
        config = {"sync": {"convex": {}, "wrangler": {"config": "./wrangler.jsonc"}}}
        runner = make_runner(project, config, convex=convex_store, wrangler=wrangler_store)

        with pytest.raises(ConfigError, match="envMapping"):
            runner.preflight(["dev"])
        assert convex_store.calls == []
        assert wrangler_store.calls == []

    def test_accepts_complete_mapping(self, project, wrangler_store):
        (project / "wrangler.jsonc").write_text(WRANGLER_MULTI_ENV)
        config = {
            "sync": {
                "wrangler": {
                    "config": "./wrangler.jsonc",
                    "envMapping": {"dev": "staging", "prod": "production"},
                }
            }
        }
        runner = make_runner(project, config, wrangler=wrangler_store)
        runner.preflight(["dev", "prod"])

        reports = runner.run(["dev", "prod"])
        assert [report.outcomes[0].remote_env for report in reports] == ["staging", "production"]
        assert wrangler_store.envs["production"]["SECRET"] == "s3cret"

    def test_single_env_worker_passes(self, project, wrangler_store):
        config = {"sync": {"wrangler": {"config": "./wrangler.jsonc"}}}
        make_runner(project, config, wrangler=wrangler_store).preflight(["dev", "prod"])


class TestEnvFileHandler:
    """Test change detection for one env file."""

    def test_matching_events(self, tmp_path):
        target = tmp_path / ".env.development"
        calls = []
        handler = EnvFileHandler(target, lambda: calls.append(1))

        handler.on_modified(FileModifiedEvent(str(target)))
        handler.on_created(FileCreatedEvent(str(target)))
        handler.on_moved(FileMovedEvent(str(tmp_path / ".tmp123"), str(target)))

        assert len(calls) == 3

    def test_ignores_other_files_and_dirs(self, tmp_path):
        calls = []
        handler = EnvFileHandler(tmp_path / ".env.development", lambda: calls.append(1))

        handler.on_modified(FileModifiedEvent(str(tmp_path / ".env.production")))
        handler.on_modified(DirModifiedEvent(str(tmp_path)))
        handler.on_moved(FileMovedEvent(str(tmp_path / ".env.development"), str(tmp_path / "backup")))

        assert calls == []


class TestWatch:
    """Test watch mode end to end."""

    def test_reruns_after_change(self, project, convex_store):
        runner = make_runner(project, {"sync": {"convex": {}}}, convex=convex_store)
        env_file = project / ".env.development"
        reports = []
        rerun = threading.Event()
        stop = threading.Event()

        def on_report(report):
            reports.append(report)
            if len(reports) >= 2:
                rerun.set()

        thread = threading.Thread(target=runner.watch, args=(["dev"], True, on_report, stop), daemon=True)
        thread.start()
        try:
            for attempt in range(50):
                if rerun.wait(0.2):
                    break
                if reports:
                    env_file.write_text(f"API_URL=https://dev.example.com\nCOUNTER={attempt}\n")
            assert rerun.is_set()
            assert reports[0].env == "dev"
        finally:
            stop.set()
            thread.join(5)

        assert not thread.is_alive()

    def test_change_reruns_only_that_env(self, project, convex_store):
        """Editing the production file never re-runs dev."""
        runner = make_runner(project, {"sync": {"convex": {}}}, convex=convex_store)
        prod_file = project / ".env.production"
        reports = []
        lock = threading.Lock()
        rerun = threading.Event()
        stop = threading.Event()

        def on_report(report):
            with lock:
                reports.append(report)
                if len(reports) >= 3:
                    rerun.set()

        thread = threading.Thread(target=runner.watch, args=(["dev", "prod"], True, on_report, stop), daemon=True)
        thread.start()
        try:
            for attempt in range(50):
                if rerun.wait(0.2):
                    break
                if len(reports) >= 2:
                    prod_file.write_text(f"API_URL=https://example.com\nCOUNTER={attempt}\n")
            assert rerun.is_set()
        finally:
            stop.set()
            thread.join(5)

        assert [report.env for report in reports[:2]] == ["dev", "prod"]
        assert all(report.env == "prod" for report in reports[2:])
