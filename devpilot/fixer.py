"""
ErrorFixer — one narrow, mechanical remediation per DetectedError.

  missing_dependency  → `<pm> add <package>` unless package.json already lists it
  css_error           → swap a missing theme stylesheet for a sibling, or drop the import
  import_error        → theme stylesheet swap only; anything else needs a human
  syntax_error/unknown→ never touched

Changes are written straight to disk. There is no rollback.
"""
import os, json, logging, subprocess
from dataclasses import dataclass
from pathlib import Path

from devpilot import config
from devpilot.detector import (
    DetectedError, MISSING_DEPENDENCY, IMPORT_ERROR, CSS_ERROR, STYLE_EXTS,
)

log = logging.getLogger("fixer")

INSTALLED      = "installed"
FIXED_IMPORT   = "fixed_import"
REMOVED_IMPORT = "removed_import"
FIXED_SYNTAX   = "fixed_syntax"
SKIPPED        = "skipped"

DEP_SECTIONS = ("dependencies", "devDependencies", "peerDependencies")


@dataclass
class FixResult:
    success: bool
    action: str
    message: str


# ── Package manager ───────────────────────────────────────────────────────────

def package_manager(cwd) -> str:
    """Pick the project's package manager from its lockfile; pnpm when there is none."""
    root = Path(cwd)
    if (root / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (root / "yarn.lock").exists():
        return "yarn"
    if (root / "package-lock.json").exists():
        return "npm"
    return "pnpm"


def install_command(cwd, package: str) -> list:
    pm = package_manager(cwd)
    return ["npm", "install", package] if pm == "npm" else [pm, "add", package]


def declared_dependencies(cwd) -> dict:
    """dependencies ∪ devDependencies ∪ peerDependencies of cwd/package.json ({} if absent)."""
    manifest = Path(cwd) / "package.json"
    if not manifest.exists():
        return {}
    data = json.loads(manifest.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("package.json is not a JSON object")
    deps = {}
    for section in DEP_SECTIONS:
        entries = data.get(section)
        if isinstance(entries, dict):
            deps.update(entries)
    return deps


def is_declared(package: str, deps: dict) -> bool:
    if package.startswith("@"):
        scope = package.split("/")[0] + "/"
        return any(name.startswith(scope) and deps[name] for name in deps)
    return bool(deps.get(package.split("/")[0]))


def _clip(text: str, limit: int) -> str:
    if text and len(text) > limit:
        return text[:limit] + "\n...[output truncated]"
    return text or ""


# ── Fixer ─────────────────────────────────────────────────────────────────────

class ErrorFixer:
    def __init__(self, runtime=None, runner=subprocess.run,
                 timeout: float = None, max_output: int = None):
        self.runtime    = runtime
        self.runner     = runner
        self.timeout    = config.INSTALL_TIMEOUT if timeout is None else timeout
        self.max_output = config.MAX_OUTPUT_BYTES if max_output is None else max_output

    def fix_error(self, error: DetectedError, cwd) -> FixResult:
        if not error.fixable:
            return FixResult(False, SKIPPED,
                             f'Error type "{error.type}" is not automatically fixable')
        if error.type == MISSING_DEPENDENCY:
            return self.fix_missing_dependency(error, cwd)
        if error.type in (IMPORT_ERROR, CSS_ERROR):
            return self.fix_import(error)
        return FixResult(False, SKIPPED, f"Unknown error type: {error.type}")

    # ── missing_dependency ────────────────────────────────────────────────────

    def fix_missing_dependency(self, error: DetectedError, cwd) -> FixResult:
        package = error.package_name
        if not package:
            return FixResult(False, SKIPPED, "Package name not found in error")

        try:
            if is_declared(package, declared_dependencies(cwd)):
                log.info(f"📦 {package} already declared in package.json, skipping install")
                return FixResult(True, SKIPPED, f"Package {package} is already installed")
        except (OSError, ValueError) as e:
            return FixResult(False, SKIPPED, f"Error fixing missing dependency: {e}")

        cmd = install_command(cwd, package)
        log.info(f"📦 Installing {package}: {' '.join(cmd)}")
        try:
            r = self.runner(
                cmd, cwd=str(cwd), capture_output=True, text=True,
                timeout=self.timeout, env=self._env(),
            )
        except subprocess.TimeoutExpired:
            return FixResult(False, INSTALLED,
                             f"Failed to install {package}: timed out after {self.timeout:.0f}s")
        except OSError as e:
            return FixResult(False, INSTALLED, f"Failed to install {package}: {e}")

        stderr = _clip(r.stderr, self.max_output).strip()
        if r.returncode != 0 or (stderr and "WARN" not in stderr):
            detail = stderr or _clip(r.stdout, self.max_output).strip() or f"exit code {r.returncode}"
            log.warning(f"❌ Install of {package} failed: {detail[:200]}")
            return FixResult(False, INSTALLED, f"Failed to install {package}: {detail}")

        log.info(f"✅ Installed {package}")
        return FixResult(True, INSTALLED, f"Successfully installed {package}")

    def _env(self):
        env = dict(os.environ)
        if self.runtime is not None:
            env.update(self.runtime.npm_env)
            if self.runtime.node_dir:
                env["PATH"] = self.runtime.node_dir + os.pathsep + env.get("PATH", "")
        return env

    # ── import_error / css_error ──────────────────────────────────────────────

    def fix_import(self, error: DetectedError) -> FixResult:
        if not error.file_path or not error.import_path:
            return FixResult(False, SKIPPED, "File path or import path not found in error")

        src = Path(error.file_path)
        try:
            if not src.exists():
                return FixResult(False, SKIPPED, f"Source file not found: {src}")
            content = src.read_text(encoding="utf-8")
            lines = content.split("\n")

            idx = self._target_line(error, lines)
            if idx is None:
                return FixResult(False, SKIPPED, f"Invalid line number: {error.line}")

            import_path = error.import_path
            missing = (src.parent / import_path).resolve()

            if self._is_theme_stylesheet(import_path) and not missing.exists():
                substitute = self._sibling_stylesheet(missing)
                new_path = substitute and import_path[: len(import_path) - len(missing.name)] + substitute
                if new_path and import_path in lines[idx]:
                    lines[idx] = lines[idx].replace(import_path, new_path)
                    src.write_text("\n".join(lines), encoding="utf-8")
                    log.info(f"🔧 {src.name}: {import_path} → {new_path}")
                    return FixResult(True, FIXED_IMPORT, f"Replaced {import_path} with {new_path}")

            if error.type == CSS_ERROR:
                target = lines[idx]
                if not missing.exists() and "import" in target and import_path in target:
                    del lines[idx]
                    src.write_text("\n".join(lines), encoding="utf-8")
                    log.info(f"🔧 {src.name}: removed import of missing {import_path}")
                    return FixResult(True, REMOVED_IMPORT,
                                     f"Removed import for missing file: {import_path}")
                return FixResult(False, SKIPPED, "Could not automatically fix import error")

            return FixResult(False, SKIPPED,
                             f"Import path error requires manual fix: {import_path}")
        except (OSError, UnicodeDecodeError) as e:
            return FixResult(False, SKIPPED, f"Error fixing import: {e}")

    @staticmethod
    def _target_line(error: DetectedError, lines: list):
        """0-based index of the offending line; falls back to the first line naming the import."""
        if error.line is not None:
            if not 1 <= error.line <= len(lines):
                return None
            if error.import_path in lines[error.line - 1]:
                return error.line - 1
        for i, line in enumerate(lines):
            if error.import_path in line:
                return i
        return None if error.line is None else error.line - 1

    @staticmethod
    def _is_theme_stylesheet(import_path: str) -> bool:
        parts = import_path.replace("\\", "/").split("/")
        ext = parts[-1].rsplit(".", 1)[-1].lower() if "." in parts[-1] else ""
        return ext in STYLE_EXTS and "theme" in parts[:-1]

    @staticmethod
    def _sibling_stylesheet(missing: Path):
        """Another stylesheet with the same extension in the missing file's directory."""
        if not missing.parent.is_dir():
            return None
        candidates = sorted(
            p.name for p in missing.parent.iterdir()
            if p.is_file() and p.suffix.lower() == missing.suffix.lower() and p.name != missing.name
        )
        return candidates[0] if candidates else None
