"""Tests for source file filtering and lightweight parsing."""

import pytest

from product_kb.codebase.parser import (
    MAX_NAMES,
    detect_language,
    detect_module_type,
    module_name_from_path,
    parse_file,
    should_include_file,
)


class TestFileFilter:
    """Tests for should_include_file."""

    @pytest.mark.parametrize(
        "path",
        ["src/app.ts", "components/Button.tsx", "server/main.go", "pkg/models/user.py", "lib/index.jsx"],
    )
    def test_included(self, path):
        assert should_include_file(path)

    @pytest.mark.parametrize(
        "path",
        [
            "node_modules/react/index.js",
            "web/dist/bundle.js",
            "src/__pycache__/x.py",
            "package-lock.json",
            ".env",
            "src/.eslintrc.js",
            "README.md",
            "assets/logo.png",
        ],
    )
    def test_excluded(self, path):
        assert not should_include_file(path)

    def test_size_limit(self):
        assert should_include_file("src/app.ts", size=100, max_bytes=100)
        assert not should_include_file("src/app.ts", size=101, max_bytes=100)


class TestClassification:
    """Tests for language and module type detection."""

    def test_languages(self):
        assert detect_language("a/b.tsx") == "typescript"
        assert detect_language("a/b.JS") == "javascript"
        assert detect_language("a/b.py") == "python"
        assert detect_language("a/b.go") == "go"
        assert detect_language("a/b.rb") is None

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("src/components/Button.tsx", "component"),
            ("src/services/billing.ts", "service"),
            ("lib/http.ts", "service"),
            ("app/models/user.py", "model"),
            ("src/api/users.ts", "route"),
            ("src/utils/format.ts", "utility"),
            ("config/settings.py", "config"),
            ("src/components/Button.test.tsx", "test"),
            ("tests/test_users.py", "test"),
            ("pkg/server_test.go", "test"),
            ("main.go", None),
        ],
    )
    def test_module_types(self, path, expected):
        assert detect_module_type(path) == expected

    def test_module_name(self):
        assert module_name_from_path("src/components/Button.tsx") == "Button"
        assert module_name_from_path("src/auth/index.ts") == "auth"
        assert module_name_from_path("pkg/users/__init__.py") == "users"
        assert module_name_from_path("Button.test.tsx") == "Button"


class TestParsers:
    """Tests for the per-language regex parsers."""

    def test_typescript(self):
        source = "\n".join([
            "import React from 'react'",
            "import { useState, useEffect as effect } from \"react\"",
            "export function Dashboard() {}",
            "export const REFRESH = 30",
            "export interface DashboardProps {}",
            "export class Store {}",
            "export default function App() {}",
            "function helper() {}",
            "type Local = string",
        ])

        parsed = parse_file(source, "typescript")

        assert parsed.imports == ["React from react", "useState from react", "useEffect from react"]
        assert parsed.exports == ["Dashboard", "REFRESH", "DashboardProps", "Store", "default(App)"]
        assert parsed.functions == ["Dashboard", "helper"]
        assert parsed.classes == ["Store"]
        assert parsed.types == ["DashboardProps", "Local"]

    def test_python(self):
        source = "\n".join([
            "import os",
            "from typing import Any, Optional as Opt",
            "class SsoService:",
            "    def login(self):",
            "        pass",
            "async def fetch(url):",
            "    pass",
            "def _private():",
            "    pass",
            "class _Hidden:",
            "    pass",
        ])

        parsed = parse_file(source, "python")

        assert parsed.imports == ["os", "Any from typing", "Optional from typing"]
        assert parsed.classes == ["SsoService", "_Hidden"]
        assert parsed.functions == ["fetch", "_private"]
        assert parsed.exports == ["SsoService", "fetch"]

    def test_go(self):
        source = "\n".join([
            "package users",
            'import "fmt"',
            "import (",
            '    "net/http"',
            '    log "github.com/sirupsen/logrus"',
            ")",
            "type User struct {",
            "}",
            "type store interface {",
            "}",
            "func (s *Server) Handle(w http.ResponseWriter) {}",
            "func newServer() *Server {}",
        ])

        parsed = parse_file(source, "go")

        assert parsed.imports == ["fmt", "net/http", "github.com/sirupsen/logrus"]
        assert parsed.classes == ["User"]
        assert parsed.types == ["store"]
        assert parsed.functions == ["Handle", "newServer"]
        assert parsed.exports == ["User", "Handle"]

    def test_unknown_language(self):
        assert parse_file("puts 'hi'", "ruby").exports == []

    def test_names_are_deduplicated_and_capped(self):
        source = "\n".join(f"export const NAME_{i} = {i}" for i in range(MAX_NAMES + 20))
        source += "\nexport const NAME_0 = 0"

        parsed = parse_file(source, "javascript")

        assert len(parsed.exports) == MAX_NAMES
        assert parsed.exports[0] == "NAME_0"
        assert len(set(parsed.exports)) == MAX_NAMES
