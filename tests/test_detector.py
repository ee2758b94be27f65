"""
Tests for the error detector.

- package-name extraction
- output / overlay / console matchers
- fixable flag and de-duplication
"""
import pytest

from devpilot.detector import (
    DetectedError, detect_from_output, detect_from_overlay, detect_from_console,
    dedupe, extract_package_name,
    MISSING_DEPENDENCY, IMPORT_ERROR, SYNTAX_ERROR, CSS_ERROR, UNKNOWN,
)

CWD = "/proj"


class TestExtractPackageName:

    @pytest.mark.parametrize("spec, expected", [
        ("lodash", "lodash"),
        ("lodash/debounce", "lodash"),
        ("codemirror/theme/default.css", "codemirror"),
        ("@ant-design/icons", "@ant-design/icons"),
        ("@ant-design/icons/lib/icons/Smile.js", "@ant-design/icons"),
        ("dayjs.js", "dayjs"),
    ])
    def test_bare_specifiers(self, spec, expected):
        assert extract_package_name(spec) == expected

    @pytest.mark.parametrize("spec", ["./App", "../theme/dark.css", "/src/main.tsx", ""])
    def test_relative_specifiers_are_not_packages(self, spec):
        assert extract_package_name(spec) is None


class TestDetectFromOutput:

    def test_failed_to_resolve_bare_import(self):
        """Scenario A."""
        errors = detect_from_output('Failed to resolve import "lodash/debounce"', CWD)

        assert len(errors) == 1
        err = errors[0]
        assert err.type == MISSING_DEPENDENCY
        assert err.package_name == "lodash"
        assert err.import_path == "lodash/debounce"
        assert err.fixable is True

    @pytest.mark.parametrize("module, package", [
        ("express", "express"),
        ("lodash/fp/map", "lodash"),
        ("@tanstack/react-query", "@tanstack/react-query"),
        ("@mui/material/Button", "@mui/material"),
    ])
    def test_cannot_find_module(self, module, package):
        errors = detect_from_output(f"Error: Cannot find module '{module}'", CWD)

        assert len(errors) == 1
        assert errors[0].type == MISSING_DEPENDENCY
        assert errors[0].package_name == package

    def test_webpack_module_not_found(self):
        line = "Module not found: Error: Can't resolve 'axios' in '/proj/src'"
        errors = detect_from_output(line, CWD)

        assert [e.package_name for e in errors] == ["axios"]

    def test_relative_import_is_import_error(self):
        line = 'Failed to resolve import "./components/Header" from "src/App.jsx". Does the file exist?'
        errors = detect_from_output(line, CWD)

        assert len(errors) == 1
        err = errors[0]
        assert err.type == IMPORT_ERROR
        assert err.import_path == "./components/Header"
        assert err.file_path == "/proj/src/App.jsx"
        assert err.package_name is None

    def test_stylesheet_import_is_css_error(self):
        line = 'Failed to resolve import "./styles/missing.css" from "src/main.jsx". Does the file exist?'
        errors = detect_from_output(line, CWD)

        assert len(errors) == 1
        assert errors[0].type == CSS_ERROR
        assert errors[0].import_path == "./styles/missing.css"
        assert errors[0].file_path == "/proj/src/main.jsx"
        assert errors[0].fixable is True

    def test_syntax_error_with_location(self):
        line = "[vite] Internal server error: src/App.jsx: Unexpected token (12:5)"
        errors = detect_from_output(line, CWD)

        assert len(errors) == 1
        err = errors[0]
        assert err.type == SYNTAX_ERROR
        assert err.file_path == "/proj/src/App.jsx"
        assert (err.line, err.column) == (12, 5)
        assert err.fixable is False

    def test_syntax_error_without_location_is_ignored(self):
        assert detect_from_output("SyntaxError: Unexpected end of JSON input", CWD) == []

    def test_noise_yields_nothing(self):
        output = "\n".join([
            "  VITE v5.0.0  ready in 312 ms",
            "  ➜  Local:   http://localhost:3000/",
            "",
        ])
        assert detect_from_output(output, CWD) == []

    def test_repeated_lines_are_deduplicated(self):
        output = "\n".join(['Failed to resolve import "axios"'] * 3 + ["Cannot find module 'axios'"])
        errors = detect_from_output(output, CWD)

        assert len(errors) == 1
        assert errors[0].package_name == "axios"

    def test_none_output(self):
        assert detect_from_output(None, CWD) == []


class TestDetectFromOverlay:

    def test_stylesheet_overlay_block(self):
        overlay = (
            '[plugin:vite:import-analysis] Failed to resolve import "./theme/dark.css" '
            'from "src/main.jsx". Does the file exist?\n'
            "/proj/src/main.jsx:3:7\n"
            '1  |  import React from "react";\n'
        )
        errors = detect_from_overlay(overlay, CWD)

        assert len(errors) == 1
        err = errors[0]
        assert err.type == CSS_ERROR
        assert err.import_path == "./theme/dark.css"
        assert err.file_path == "/proj/src/main.jsx"
        assert (err.line, err.column) == (3, 7)

    def test_missing_dependency_overlay(self):
        overlay = '[plugin:vite:import-analysis] Failed to resolve import "dayjs" from "src/App.jsx".'
        errors = detect_from_overlay(overlay, CWD)

        assert [(e.type, e.package_name) for e in errors] == [(MISSING_DEPENDENCY, "dayjs")]

    def test_bare_import_analysis_marker(self):
        errors = detect_from_overlay("[plugin:vite:import-analysis] something went wrong", CWD)

        assert len(errors) == 1
        assert errors[0].type == IMPORT_ERROR
        assert errors[0].fixable is False

    def test_empty_overlay(self):
        assert detect_from_overlay("   ", CWD) == []


class TestDetectFromConsole:

    def test_missing_module(self):
        errors = detect_from_console("Uncaught Error: Cannot find module 'axios'", CWD)

        assert [(e.type, e.package_name) for e in errors] == [(MISSING_DEPENDENCY, "axios")]

    def test_relative_module_is_not_reported(self):
        assert detect_from_console("Uncaught Error: Cannot find module './util'", CWD) == []

    def test_syntax_errors_are_out_of_scope(self):
        assert detect_from_console("SyntaxError: Unexpected token (1:1) at App.jsx:1:1", CWD) == []


class TestDetectedError:

    def test_syntax_error_never_fixable(self):
        err = DetectedError(SYNTAX_ERROR, "Syntax error", file_path="/a.js", import_path="x")
        assert err.fixable is False

    def test_unknown_type_falls_back(self):
        err = DetectedError("weird", "?")
        assert err.type == UNKNOWN
        assert err.fixable is False

    def test_missing_dependency_needs_package(self):
        assert DetectedError(MISSING_DEPENDENCY, "m").fixable is False
        assert DetectedError(MISSING_DEPENDENCY, "m", package_name="x").fixable is True

    def test_dedupe_key_prefers_package_then_import_then_message(self):
        a = DetectedError(MISSING_DEPENDENCY, "first", package_name="lodash", import_path="lodash/a")
        b = DetectedError(MISSING_DEPENDENCY, "second", package_name="lodash", import_path="lodash/b")
        c = DetectedError(IMPORT_ERROR, "same", import_path="./x")
        d = DetectedError(IMPORT_ERROR, "other", import_path="./x")
        e = DetectedError(UNKNOWN, "boom")
        f = DetectedError(UNKNOWN, "boom")

        assert dedupe([a, b, c, d, e, f]) == [a, c, e]

    def test_location_and_dict(self):
        err = DetectedError(SYNTAX_ERROR, "s", file_path="/p/a.js", line=4, column=2)
        assert err.location == "/p/a.js:4:2"
        assert err.to_dict()["fixable"] is False
