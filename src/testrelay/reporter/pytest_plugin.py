#
# src/testrelay/reporter/pytest_plugin.py
#
"""
pytest plugin that reports the run to the testrelay engine.

Loaded with ``-p testrelay.reporter.pytest_plugin`` (the engine puts that in
PYTEST_ADDOPTS) and inactive unless the engine's runner variable is set, so
having it installed never changes a plain pytest run.

Each item gets a ``start`` at log-start and exactly one terminal event at
log-finish, computed from its setup, call and teardown reports.
"""

from pathlib import Path

import pytest
import structlog

from testrelay.telemetry import StructLogger

from .client import EventReporter, executed_under_runner, file_uri, is_coverage_run
from .coverage import CoverageRecorder

log: StructLogger = structlog.get_logger("reporter.pytest_plugin")

PLUGIN_NAME = "testrelay-reporter"


class _Outcome:
    """The terminal event accumulated for one item across its phases."""
    __slots__ = ("kind", "message")

    def __init__(self):
        self.kind = "pass"
        self.message: str | None = None

    def record(self, kind: str, message: str | None = None) -> None:
        # The first non-pass outcome wins; a teardown error does not hide a failure.
        if self.kind == "pass":
            self.kind = kind
            self.message = message


class TestRelayPlugin:
    __test__ = False

    def __init__(self, reporter: EventReporter, rootpath: Path, recorder: CoverageRecorder | None = None):
        self.reporter = reporter
        self.rootpath = rootpath
        self.recorder = recorder
        self._outcomes: dict[str, _Outcome] = {}
        self._uris: dict[str, str] = {}
        self._finished = False

    def _uri_for(self, nodeid: str, fspath: str) -> str:
        uri = self._uris.get(nodeid)
        if uri is None:
            uri = self._uris[nodeid] = file_uri(self.rootpath / fspath)
        return uri

    @pytest.hookimpl
    def pytest_collectreport(self, report: pytest.CollectReport) -> None:
        if report.failed:
            self.reporter.append_output(f"Error collecting {report.nodeid}:\n{report.longreprtext}\n")

    @pytest.hookimpl
    def pytest_runtest_logstart(self, nodeid: str, location: tuple[str, int | None, str]) -> None:
        fspath, lineno, _ = location
        self._outcomes[nodeid] = _Outcome()
        # pytest locations are already 0-based.
        self.reporter.start_test(id=nodeid, uri=self._uri_for(nodeid, fspath), line=lineno)

    @pytest.hookimpl
    def pytest_runtest_logreport(self, report: pytest.TestReport) -> None:
        outcome = self._outcomes.setdefault(report.nodeid, _Outcome())
        if report.skipped:
            outcome.record("skip")
        elif report.failed:
            kind = "fail" if report.when == "call" else "error"
            outcome.record(kind, report.longreprtext or f"{report.when} failed")

        if report.when == "call":
            captured = report.capstdout + report.capstderr
            if captured:
                self.reporter.append_output(captured)

    @pytest.hookimpl
    def pytest_runtest_logfinish(self, nodeid: str, location: tuple[str, int | None, str]) -> None:
        outcome = self._outcomes.pop(nodeid, _Outcome())
        uri = self._uri_for(nodeid, location[0])
        if outcome.kind == "fail":
            self.reporter.record_fail(id=nodeid, message=outcome.message or "", uri=uri)
        elif outcome.kind == "error":
            self.reporter.record_error(id=nodeid, message=outcome.message, uri=uri)
        elif outcome.kind == "skip":
            self.reporter.record_skip(id=nodeid, uri=uri)
        else:
            self.reporter.record_pass(id=nodeid, uri=uri)

    @pytest.hookimpl(trylast=True)
    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:
        self.finish()

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self.reporter.shutdown()
        if self.recorder is not None:
            self.recorder.stop()
            try:
                self.recorder.write_artifact()
            except OSError as e:
                log.error("Failed to write coverage artifact", error=str(e))
            self.reporter.internal_shutdown()


def pytest_configure(config: pytest.Config) -> None:
    if not executed_under_runner() or config.pluginmanager.has_plugin(PLUGIN_NAME):
        return
    recorder = None
    if is_coverage_run():
        recorder = CoverageRecorder(Path.cwd())
        recorder.start()
    plugin = TestRelayPlugin(EventReporter(), config.rootpath, recorder)
    config.pluginmanager.register(plugin, PLUGIN_NAME)


def pytest_unconfigure(config: pytest.Config) -> None:
    plugin = config.pluginmanager.get_plugin(PLUGIN_NAME)
    if plugin is None:
        return
    # Covers runs that never reached sessionfinish.
    plugin.finish()
    plugin.reporter.at_exit()
    config.pluginmanager.unregister(plugin)


# 🔼⚙️
