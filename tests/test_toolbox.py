"""Tests for DevToolbox: tool dispatch and the auto-fix pass."""
import pytest

from devpilot.detector import DetectedError, MISSING_DEPENDENCY, CSS_ERROR, SYNTAX_ERROR
from devpilot.executor import CommandOutcome, DEV_SERVER, ONE_SHOT
from devpilot.fixer import FixResult, INSTALLED, SKIPPED, FIXED_IMPORT
from devpilot.toolbox import DevToolbox, TOOL_SCHEMAS
from devpilot.validator import ValidationVerdict


class FakeFixer:
    def __init__(self, results=None):
        self.results = results or {}
        self.calls   = []

    def fix_error(self, error, cwd):
        self.calls.append((error, cwd))
        return self.results.get(error.key, FixResult(True, INSTALLED, f"Successfully installed {error.package_name}"))


class FakeExecutor:
    default_cwd = None

    def __init__(self, outcome):
        self.outcome = outcome
        self.calls   = []
        self.killed  = []

    def execute(self, command, cwd=None):
        self.calls.append((command, cwd))
        return self.outcome

    def kill_server(self, cwd=None):
        self.killed.append(cwd)
        return "Dev server stopped"


class FakeValidator:
    def __init__(self, verdict):
        self.verdict = verdict
        self.calls   = []

    def validate(self, url, timeout=None, cwd=None):
        self.calls.append((url, timeout, cwd))
        return self.verdict


def dep(pkg):
    return DetectedError(MISSING_DEPENDENCY, f"Missing dependency: {pkg}", package_name=pkg, import_path=pkg)


@pytest.fixture
def make_toolbox(registry):
    def _make(outcome=None, verdict=None, fixer=None, opener=None):
        return DevToolbox(
            registry,
            executor=FakeExecutor(outcome or CommandOutcome("ok")),
            validator=FakeValidator(verdict or ValidationVerdict(True, "✅ fine")),
            fixer=fixer or FakeFixer(),
            opener=opener,
            default_cwd="/proj",
        )
    return _make


class TestAutoFix:

    def test_each_distinct_fixable_error_is_fixed_once(self, make_toolbox):
        fixer = FakeFixer()
        tb = make_toolbox(fixer=fixer)
        syntax = DetectedError(SYNTAX_ERROR, "Syntax error: x", file_path="/proj/a.js")

        out = tb.auto_fix([dep("axios"), dep("axios"), syntax, dep("dayjs")], "/proj")

        assert [e.package_name for e, _ in fixer.calls] == ["axios", "dayjs"]
        assert out.startswith("\n\n🔧 Auto-fix results:\n")
        assert "- ✅ [installed] Successfully installed axios" in out

    def test_outcome_marks(self, make_toolbox):
        css = DetectedError(CSS_ERROR, "css", file_path="/proj/src/a.jsx", import_path="./theme/x.css")
        fixer = FakeFixer({
            dep("left-pad").key: FixResult(False, INSTALLED, "Failed to install left-pad: 404"),
            css.key: FixResult(False, SKIPPED, "Could not automatically fix import error"),
        })

        out = make_toolbox(fixer=fixer).auto_fix([dep("left-pad"), css], "/proj")

        assert "- ❌ [installed] Failed to install left-pad: 404" in out
        assert "- ⏭ [skipped] Could not automatically fix import error" in out

    def test_nothing_fixable(self, make_toolbox):
        syntax = DetectedError(SYNTAX_ERROR, "Syntax error: x")
        assert make_toolbox().auto_fix([syntax], "/proj") == ""

    def test_fixer_crash_is_reported(self, make_toolbox):
        class Crashing(FakeFixer):
            def fix_error(self, error, cwd):
                raise RuntimeError("disk full")

        out = make_toolbox(fixer=Crashing()).auto_fix([dep("axios")], "/proj")

        assert "- ❌ missing_dependency: disk full" in out


class TestTools:

    def test_run_command_fixes_dev_server_startup_errors(self, make_toolbox):
        outcome = CommandOutcome("[Dev server started in background]", DEV_SERVER, [dep("axios")])
        tb = make_toolbox(outcome=outcome)

        out = tb.run_command("npm run dev")

        assert tb.executor.calls == [("npm run dev", "/proj")]
        assert out.startswith("[Dev server started in background]")
        assert "Successfully installed axios" in out

    def test_run_command_plain(self, make_toolbox):
        tb = make_toolbox(outcome=CommandOutcome("Command executed", ONE_SHOT))
        assert tb.run_command("ls", "/other") == "Command executed"
        assert tb.executor.calls == [("ls", "/other")]

    def test_validate_page_failure_triggers_fixes(self, make_toolbox):
        verdict = ValidationVerdict(False, "❌ Page validation failed", [dep("dayjs")])
        tb = make_toolbox(verdict=verdict)

        out = tb.validate_page("localhost:3000", 5000)

        assert tb.validator.calls == [("http://localhost:3000", 5000, "/proj")]
        assert out.startswith("❌ Page validation failed")
        assert "Successfully installed dayjs" in out

    def test_validate_page_pass(self, make_toolbox):
        assert make_toolbox().validate_page("http://localhost:3000") == "✅ fine"

    def test_open_browser_preview(self, make_toolbox):
        opened = []
        tb = make_toolbox(opener=opened.append)

        out = tb.open_browser_preview("localhost:3000")

        assert opened == ["http://localhost:3000"]
        assert out == "Opened browser preview: http://localhost:3000"

    def test_open_browser_preview_without_opener(self, make_toolbox):
        assert "http://localhost:3000" in make_toolbox().open_browser_preview("localhost:3000")

    def test_kill_project_dev_server(self, make_toolbox):
        tb = make_toolbox()
        assert tb.kill_project_dev_server("/proj") == "Dev server stopped"
        assert tb.executor.killed == ["/proj"]


class TestDispatch:

    def test_schemas_cover_every_tool(self):
        assert {s["name"] for s in TOOL_SCHEMAS} == {
            "run_command", "open_browser_preview", "kill_project_dev_server", "validate_page",
        }

    def test_call_routes_by_name(self, make_toolbox):
        tb = make_toolbox()
        assert tb.call("run_command", {"command": "ls"}) == "ok"
        assert tb.call("validate_page", {"url": "localhost:3000", "timeout": 1000}) == "✅ fine"
        assert tb.validator.calls[-1][1] == 1000

    def test_call_rejects_bad_input(self, make_toolbox):
        tb = make_toolbox()
        assert tb.call("run_command", {}).startswith("Error:")
        assert tb.call("validate_page", {}).startswith("Error:")
        assert tb.call("rm_rf", {}) == "Error: unknown tool 'rm_rf'"

    def test_shutdown_kills_registry(self, make_toolbox, registry, platform):
        from conftest import FakeProc

        registry.track(FakeProc(42), 3000)
        make_toolbox().shutdown()

        assert platform.tree_killed == [42]
        assert len(registry) == 0
