"""
ErrorDetector — turns raw dev-server output, error-overlay text and console
messages into DetectedError records.

Everything here is a pure function: no I/O, no state, never raises on odd
input. Matching is driven by ordered (pattern, builder) rule lists; the first
rule whose builder returns a record wins for a given line / block.
"""
import os, re
from dataclasses import dataclass, field, asdict
from typing import Optional

MISSING_DEPENDENCY = "missing_dependency"
IMPORT_ERROR       = "import_error"
SYNTAX_ERROR       = "syntax_error"
CSS_ERROR          = "css_error"
UNKNOWN            = "unknown"
ERROR_TYPES = (MISSING_DEPENDENCY, IMPORT_ERROR, SYNTAX_ERROR, CSS_ERROR, UNKNOWN)

ASSET_EXTS   = ("css", "scss", "sass", "less", "png", "jpg", "jpeg", "gif", "svg")
STRIP_EXTS   = ASSET_EXTS + ("js", "ts", "tsx", "jsx")
STYLE_EXTS   = ("css", "scss", "sass", "less")


def is_fixable(type_: str, package_name=None, import_path=None) -> bool:
    if type_ == MISSING_DEPENDENCY:
        return bool(package_name)
    if type_ in (IMPORT_ERROR, CSS_ERROR):
        return bool(import_path)
    return False


@dataclass
class DetectedError:
    type: str
    message: str
    file_path: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    package_name: Optional[str] = None
    import_path: Optional[str] = None
    fixable: bool = field(init=False)

    def __post_init__(self):
        if self.type not in ERROR_TYPES:
            self.type = UNKNOWN
        self.fixable = is_fixable(self.type, self.package_name, self.import_path)

    @property
    def key(self) -> tuple:
        return (self.type, self.package_name or self.import_path or self.message)

    @property
    def location(self) -> str:
        if not self.file_path:
            return ""
        loc = self.file_path
        if self.line:
            loc += f":{self.line}"
            if self.column:
                loc += f":{self.column}"
        return loc

    def to_dict(self) -> dict:
        return asdict(self)


def dedupe(errors) -> list:
    """Keep the first record per (type, package_name or import_path or message)."""
    seen, unique = set(), []
    for e in errors:
        if e.key not in seen:
            seen.add(e.key)
            unique.append(e)
    return unique


# ── Helpers ───────────────────────────────────────────────────────────────────

_EXT_RE = re.compile(rf"\.(?:{'|'.join(STRIP_EXTS)})$")

def extract_package_name(import_path: str):
    """
    "lodash/debounce"               -> "lodash"
    "codemirror/theme/default.css"  -> "codemirror"
    "@ant-design/icons/lib/x.js"    -> "@ant-design/icons"
    Relative / absolute specifiers are not packages and give None.
    """
    if not import_path or is_relative(import_path):
        return None
    bare = _EXT_RE.sub("", import_path)
    parts = bare.split("/")
    if bare.startswith("@") and len(parts) >= 2:
        return f"{parts[0]}/{parts[1]}"
    return parts[0]


def is_relative(spec: str) -> bool:
    return spec.startswith((".", "/", "\\")) or bool(re.match(r"^[A-Za-z]:[\\/]", spec))


_URL_PREFIX = re.compile(r"^https?://[^/]+")

def resolve_path(path: str, cwd: str) -> str:
    """Absolute path for a file reference taken from tool output."""
    path = path.strip().strip("\"'")
    if _URL_PREFIX.match(path):
        path = _URL_PREFIX.sub("", path).lstrip("/")
        path = path.split("?")[0]
    if path.startswith("/@fs/"):
        path = path[4:]
    if os.path.isabs(path):
        return os.path.normpath(path)
    return os.path.normpath(os.path.join(cwd or os.getcwd(), path))


def _positive(value):
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    return n if n >= 1 else None


_AT_LOC     = re.compile(r"at\s+(?:[^\s(]+\s+\()?([^\s()]+?):(\d+):(\d+)")
_BLOCK_LOC  = re.compile(r"^\s*(?:at\s+)?([^\s()]*?[\w-]\.[A-Za-z]{1,5}):(\d+):(\d+)", re.MULTILINE)
_BABEL_LOC  = re.compile(r"(\S+\.[A-Za-z]{1,5}):[^\n]*?\((\d+):(\d+)\)")
_FROM_FILE  = re.compile(r"""from\s+["']([^"']+)["']""")

def _location(text: str, cwd: str, block: bool = False):
    """(file_path, line, column) from a line or an overlay block; Nones when absent."""
    patterns = (_BLOCK_LOC, _BABEL_LOC, _AT_LOC) if block else (_AT_LOC, _BABEL_LOC)
    for pattern in patterns:
        m = pattern.search(text)
        if m:
            return resolve_path(m.group(1), cwd), _positive(m.group(2)), _positive(m.group(3))
    return None, None, None


def _importer(text: str, cwd: str):
    """Importing file from a Vite `... from "src/App.jsx"` clause."""
    m = re.search(r"""Failed to resolve import\s+["'][^"']+["']\s+from\s+["']([^"']+)["']""", text)
    return resolve_path(m.group(1), cwd) if m else None


# ── Builders ──────────────────────────────────────────────────────────────────
# builder(match, text, cwd, block) -> DetectedError | None

def _asset_error(m, text, cwd, block):
    import_path = m.group(1)
    file_path, line, column = _location(text, cwd, block)
    return DetectedError(
        type=CSS_ERROR,
        message=f"CSS/Resource file not found: {import_path}",
        file_path=file_path or _importer(text, cwd),
        line=line, column=column,
        import_path=import_path,
    )


def _module_error(m, text, cwd, block):
    """Bare specifier → missing dependency; relative specifier → broken code import."""
    import_path = m.group(1)
    package = extract_package_name(import_path)
    file_path, line, column = _location(text, cwd, block)
    if package:
        return DetectedError(
            type=MISSING_DEPENDENCY,
            message=f"Missing dependency: {import_path}",
            file_path=file_path if block else None,
            line=line if block else None,
            column=column if block else None,
            package_name=package,
            import_path=import_path,
        )
    return DetectedError(
        type=IMPORT_ERROR,
        message=f"Import error: {import_path}",
        file_path=file_path or _importer(text, cwd),
        line=line, column=column,
        import_path=import_path,
    )


def _import_analysis_error(m, text, cwd, block):
    import_path = m.group(1) if m.lastindex else None
    if import_path is None:
        fm = _FROM_FILE.search(text)
        import_path = fm.group(1) if fm else None
    file_path, line, column = _location(text, cwd, block)
    return DetectedError(
        type=IMPORT_ERROR,
        message=f"Import error: {import_path or 'unknown'}",
        file_path=file_path, line=line, column=column,
        import_path=import_path,
    )


def _syntax_error(m, text, cwd, block):
    file_path, line, column = _location(text, cwd, block)
    if not file_path:
        return None
    return DetectedError(
        type=SYNTAX_ERROR,
        message=f"Syntax error: {m.group(1)}",
        file_path=file_path, line=line, column=column,
    )


def _console_dependency(m, text, cwd, block):
    package = extract_package_name(m.group(1))
    if not package:
        return None
    return DetectedError(
        type=MISSING_DEPENDENCY,
        message=f"Missing dependency: {m.group(1)}",
        package_name=package,
        import_path=m.group(1),
    )


# ── Rule tables ───────────────────────────────────────────────────────────────

_Q = r"""["']([^"']+)["']"""
ASSET_RESOLVE   = re.compile(rf"""Failed to resolve import\s+["']([^"']+\.(?:{'|'.join(ASSET_EXTS)}))["']""", re.I)
RESOLVE_IMPORT  = re.compile(rf"Failed to resolve import\s+{_Q}", re.I)
CANNOT_FIND     = re.compile(rf"Cannot find module\s+{_Q}", re.I)
MODULE_NOT_FOUND = re.compile(rf"Module not found:?\s+(?:Error:\s+)?(?:Can't resolve\s+)?{_Q}", re.I)
IMPORT_ANALYSIS = re.compile(rf"\[plugin:vite:import-analysis\].*?from\s+{_Q}", re.I)
IMPORT_ANALYSIS_ANY = re.compile(r"\[plugin:vite:import-analysis\]|Failed to resolve", re.I)
SYNTAX          = re.compile(r"(SyntaxError|Unexpected token)", re.I)

OUTPUT_RULES = [
    (ASSET_RESOLVE,    _asset_error),
    (RESOLVE_IMPORT,   _module_error),
    (CANNOT_FIND,      _module_error),
    (MODULE_NOT_FOUND, _module_error),
    (IMPORT_ANALYSIS,  _import_analysis_error),
    (SYNTAX,           _syntax_error),
]

OVERLAY_RULES = OUTPUT_RULES + [
    (IMPORT_ANALYSIS_ANY, _import_analysis_error),
]

CONSOLE_RULES = [
    (RESOLVE_IMPORT,   _console_dependency),
    (CANNOT_FIND,      _console_dependency),
    (MODULE_NOT_FOUND, _console_dependency),
]


def _first_match(rules, text, cwd, block=False):
    for pattern, builder in rules:
        m = pattern.search(text)
        if m:
            err = builder(m, text, cwd, block)
            if err is not None:
                return err
    return None


# ── Public API ────────────────────────────────────────────────────────────────

def detect_from_output(output: str, cwd: str) -> list:
    """Line-by-line scan of dev-server stdout/stderr."""
    errors = []
    for line in (output or "").splitlines():
        err = _first_match(OUTPUT_RULES, line, cwd)
        if err is not None:
            errors.append(err)
    return dedupe(errors)


def detect_from_overlay(overlay_text: str, cwd: str) -> list:
    """One error-overlay block → at most one record, located by its first file:line:col."""
    if not overlay_text or not overlay_text.strip():
        return []
    err = _first_match(OVERLAY_RULES, overlay_text, cwd, block=True)
    return [err] if err is not None else []


def detect_from_console(message: str, cwd: str) -> list:
    """Console messages only ever yield missing dependencies."""
    if not message:
        return []
    err = _first_match(CONSOLE_RULES, message, cwd)
    return [err] if err is not None else []
