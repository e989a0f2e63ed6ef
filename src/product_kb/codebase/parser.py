"""Lightweight source parsing: file filtering, language and module classification.

Parsing is line-based regex matching. It recovers the names a reader
needs for context (exports, imports, functions, classes, types) without
building a syntax tree.
"""

import posixpath
import re
from dataclasses import dataclass, field

from product_kb.db.models import ModuleType

MAX_NAMES = 50

SUPPORTED_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx", ".py", ".go"}

SKIP_DIRS = {
    "node_modules", ".git", "dist", "build", "__pycache__",
    ".next", ".vercel", "coverage", ".cache", "vendor",
}

SKIP_FILES = {
    "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "bun.lockb",
    ".env", ".env.local", ".env.production", ".DS_Store", "Thumbs.db",
}

LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".py": "python",
    ".go": "go",
}

# Checked in order; first match wins
MODULE_TYPE_DIRS = (
    (ModuleType.COMPONENT, ("/components/", "/component/")),
    (ModuleType.SERVICE, ("/services/", "/service/", "/lib/")),
    (ModuleType.MODEL, ("/models/", "/types/", "/schemas/", "/schema/")),
    (ModuleType.ROUTE, ("/routes/", "/api/", "/pages/", "/app/")),
    (ModuleType.UTILITY, ("/utils/", "/helpers/", "/util/")),
    (ModuleType.CONFIG, ("/config/", "/configuration/")),
)

TEST_FILE_RE = re.compile(r"(\.(test|spec)\.(ts|tsx|js|jsx|py|go)$|(^|/)test_[^/]+\.py$|_test\.(py|go)$)")


@dataclass
class ParsedModule:
    exports: list[str] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    functions: list[str] = field(default_factory=list)
    classes: list[str] = field(default_factory=list)
    types: list[str] = field(default_factory=list)

    def capped(self, limit: int = MAX_NAMES) -> "ParsedModule":
        """Copy with every name list deduplicated and truncated."""

        def cap(names: list[str]) -> list[str]:
            return list(dict.fromkeys(names))[:limit]

        return ParsedModule(
            exports=cap(self.exports),
            imports=cap(self.imports),
            functions=cap(self.functions),
            classes=cap(self.classes),
            types=cap(self.types),
        )

    def structure(self) -> dict[str, list[str]]:
        return {"functions": self.functions, "classes": self.classes, "types": self.types}


def should_include_file(path: str, size: int | None = None, max_bytes: int | None = None) -> bool:
    """Whether a repository file is worth indexing."""
    parts = path.split("/")
    file_name = parts[-1]

    if any(part in SKIP_DIRS for part in parts[:-1]):
        return False
    if file_name in SKIP_FILES or file_name.startswith("."):
        return False
    if max_bytes is not None and size is not None and size > max_bytes:
        return False

    return posixpath.splitext(file_name)[1].lower() in SUPPORTED_EXTENSIONS


def detect_language(path: str) -> str | None:
    return LANGUAGES.get(posixpath.splitext(path)[1].lower())


def detect_module_type(path: str) -> str | None:
    lower = "/" + path.lower()
    if TEST_FILE_RE.search(lower):
        return ModuleType.TEST.value
    for module_type, markers in MODULE_TYPE_DIRS:
        if any(marker in lower for marker in markers):
            return module_type.value
    return None


def module_name_from_path(path: str) -> str:
    """File name without extension (``index`` files take their directory name)."""
    directory, file_name = posixpath.split(path)
    stem = file_name.split(".")[0]
    if stem in ("index", "__init__", "mod") and directory:
        return posixpath.basename(directory)
    return stem


_TS_IMPORT = re.compile(r"""^import\s+(?:\{([^}]+)\}|(\w+)).*from\s+["']([^"']+)["']""")
_TS_EXPORT_FUNC = re.compile(r"^export\s+(?:async\s+)?function\s+(\w+)")
_TS_EXPORT_CLASS = re.compile(r"^export\s+(?:abstract\s+)?class\s+(\w+)")
_TS_EXPORT_CONST = re.compile(r"^export\s+(?:const|let|var)\s+(\w+)")
_TS_EXPORT_TYPE = re.compile(r"^export\s+(?:type|interface|enum)\s+(\w+)")
_TS_EXPORT_DEFAULT_NAMED = re.compile(r"^export\s+default\s+(?:async\s+)?(?:function|class)\s+(\w+)")
_TS_FUNC = re.compile(r"^(?:async\s+)?function\s+(\w+)")
_TS_CLASS = re.compile(r"^class\s+(\w+)")
_TS_TYPE = re.compile(r"^(?:type|interface)\s+(\w+)")


def parse_typescript(content: str) -> ParsedModule:
    parsed = ParsedModule()
    for line in content.splitlines():
        stripped = line.strip()

        if match := _TS_IMPORT.match(stripped):
            named, default, source = match.groups()
            if named:
                for name in named.split(","):
                    name = name.strip().split(" as ")[0].strip()
                    if name:
                        parsed.imports.append(f"{name} from {source}")
            elif default:
                parsed.imports.append(f"{default} from {source}")
        elif match := _TS_EXPORT_FUNC.match(stripped):
            parsed.exports.append(match.group(1))
            parsed.functions.append(match.group(1))
        elif match := _TS_EXPORT_CLASS.match(stripped):
            parsed.exports.append(match.group(1))
            parsed.classes.append(match.group(1))
        elif match := _TS_EXPORT_CONST.match(stripped):
            parsed.exports.append(match.group(1))
        elif match := _TS_EXPORT_TYPE.match(stripped):
            parsed.exports.append(match.group(1))
            parsed.types.append(match.group(1))
        elif match := _TS_EXPORT_DEFAULT_NAMED.match(stripped):
            parsed.exports.append(f"default({match.group(1)})")
        elif stripped.startswith("export default"):
            parsed.exports.append("default")
        elif match := _TS_FUNC.match(stripped):
            parsed.functions.append(match.group(1))
        elif match := _TS_CLASS.match(stripped):
            parsed.classes.append(match.group(1))
        elif match := _TS_TYPE.match(stripped):
            parsed.types.append(match.group(1))
    return parsed


_PY_FROM_IMPORT = re.compile(r"^from\s+(\S+)\s+import\s+(.+)")
_PY_IMPORT = re.compile(r"^import\s+(\S+)")
_PY_DEF = re.compile(r"^(?:async\s+)?def\s+(\w+)")
_PY_CLASS = re.compile(r"^class\s+(\w+)")


def parse_python(content: str) -> ParsedModule:
    """Top-level definitions only; public names (no leading underscore) are exports."""
    parsed = ParsedModule()
    for line in content.splitlines():
        stripped = line.strip()

        if match := _PY_FROM_IMPORT.match(stripped):
            module, names = match.groups()
            for name in names.strip("()").split(","):
                name = name.strip().split(" as ")[0].strip()
                if name:
                    parsed.imports.append(f"{name} from {module}")
        elif match := _PY_IMPORT.match(stripped):
            parsed.imports.append(match.group(1).rstrip(","))
        elif match := _PY_DEF.match(line):
            parsed.functions.append(match.group(1))
            if not match.group(1).startswith("_"):
                parsed.exports.append(match.group(1))
        elif match := _PY_CLASS.match(line):
            parsed.classes.append(match.group(1))
            if not match.group(1).startswith("_"):
                parsed.exports.append(match.group(1))
    return parsed


_GO_SINGLE_IMPORT = re.compile(r'^import\s+(?:\w+\s+)?"([^"]+)"')
_GO_METHOD = re.compile(r"^func\s+\([^)]+\)\s+(\w+)")
_GO_FUNC = re.compile(r"^func\s+(\w+)")
_GO_TYPE = re.compile(r"^type\s+(\w+)\s+(struct|interface)")


def parse_go(content: str) -> ParsedModule:
    """Capitalized functions, methods and types are exports."""
    parsed = ParsedModule()
    in_import_block = False

    for line in content.splitlines():
        stripped = line.strip()

        if stripped == "import (":
            in_import_block = True
            continue
        if in_import_block:
            if stripped == ")":
                in_import_block = False
            elif stripped:
                parsed.imports.append(stripped.split()[-1].strip('"'))
            continue

        if match := _GO_SINGLE_IMPORT.match(stripped):
            parsed.imports.append(match.group(1))
        elif match := (_GO_METHOD.match(stripped) or _GO_FUNC.match(stripped)):
            name = match.group(1)
            parsed.functions.append(name)
            if name[0].isupper():
                parsed.exports.append(name)
        elif match := _GO_TYPE.match(stripped):
            name, kind = match.groups()
            (parsed.classes if kind == "struct" else parsed.types).append(name)
            if name[0].isupper():
                parsed.exports.append(name)
    return parsed


PARSERS = {
    "typescript": parse_typescript,
    "javascript": parse_typescript,
    "python": parse_python,
    "go": parse_go,
}


def parse_file(content: str, language: str | None) -> ParsedModule:
    """Parse a file with the parser for its language; names are capped."""
    parser = PARSERS.get(language or "")
    if parser is None:
        return ParsedModule()
    return parser(content).capped()
