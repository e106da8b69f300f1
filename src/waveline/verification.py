from __future__ import annotations

import ast
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from waveline.errors import UnverifiedArtifact
from waveline.models import ArtifactClaim, ArtifactKind

logger = logging.getLogger(__name__)

PYTHON_SUFFIXES = {".py", ".pyi"}
SCRIPT_SUFFIXES = {".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".mts", ".cts"}
SKIPPED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".waveline", "dist"}

_EXPORT_DECL = re.compile(
    r"\bexport\s+(?:declare\s+)?(?:default\s+)?(?:abstract\s+)?"
    r"(?P<kind>async\s+function\*?|function\*?|const|let|var|class|type|interface|enum|namespace)"
    r"\s+(?P<name>[A-Za-z_$][\w$]*)"
)
_EXPORT_LIST = re.compile(r"\bexport\s+(?:type\s+)?\{(?P<body>[^}]*)\}")
_EXPORT_DEFAULT_IDENT = re.compile(r"\bexport\s+default\s+(?P<name>[A-Za-z_$][\w$]*)\s*;?")
_ARROW_BINDING = re.compile(
    r"\b(?:const|let|var)\s+(?P<name>[A-Za-z_$][\w$]*)\s*(?::[^=]+)?=\s*"
    r"(?:async\s+)?(?:function\b|\([^)]*\)\s*(?::[^=]+)?=>|[A-Za-z_$][\w$]*\s*=>)"
)
_FUNCTION_DECL = re.compile(r"\b(?:async\s+)?function\*?\s+(?P<name>[A-Za-z_$][\w$]*)")


@dataclass(slots=True)
class ModuleExports:
    exported: set[str] = field(default_factory=set)
    functions: set[str] = field(default_factory=set)


@dataclass(slots=True)
class VerificationReport:
    verified: list[ArtifactClaim] = field(default_factory=list)
    warnings: list[UnverifiedArtifact] = field(default_factory=list)

    @property
    def rejected(self) -> list[str]:
        return [warning.message for warning in self.warnings]


def strip_script_noise(source: str) -> str:
    """Blank out comments and string/template literals in JS/TS source.

    Newlines are kept so offsets stay line-aligned; the remaining text holds
    only code tokens, so an ``export`` inside a comment or string never
    matches.
    """
    out: list[str] = []
    index = 0
    length = len(source)
    while index < length:
        char = source[index]
        nxt = source[index + 1] if index + 1 < length else ""
        if char == "/" and nxt == "/":
            end = source.find("\n", index)
            end = length if end == -1 else end
            index = end
            continue
        if char == "/" and nxt == "*":
            end = source.find("*/", index + 2)
            end = length if end == -1 else end + 2
            out.append("".join("\n" if c == "\n" else " " for c in source[index:end]))
            index = end
            continue
        if char in {"'", '"', "`"}:
            quote = char
            cursor = index + 1
            while cursor < length:
                if source[cursor] == "\\":
                    cursor += 2
                    continue
                if source[cursor] == quote:
                    break
                if source[cursor] == "\n" and quote != "`":
                    break
                cursor += 1
            literal = source[index : cursor + 1]
            out.append(quote + "".join("\n" if c == "\n" else " " for c in literal[1:-1]) + quote)
            index = cursor + 1
            continue
        out.append(char)
        index += 1
    return "".join(out)


def script_exports(source: str) -> ModuleExports:
    code = strip_script_noise(source)
    exports = ModuleExports()
    local_functions = {match.group("name") for match in _FUNCTION_DECL.finditer(code)}
    local_functions |= {match.group("name") for match in _ARROW_BINDING.finditer(code)}

    for match in _EXPORT_DECL.finditer(code):
        name = match.group("name")
        exports.exported.add(name)
        kind = match.group("kind")
        if "function" in kind or (kind in {"const", "let", "var"} and name in local_functions):
            exports.functions.add(name)
    for match in _EXPORT_LIST.finditer(code):
        for item in match.group("body").split(","):
            item = item.strip()
            if not item:
                continue
            local, _, alias = item.partition(" as ")
            local = local.replace("type ", "").strip()
            public = (alias or local).strip()
            exports.exported.add(public)
            if local in local_functions:
                exports.functions.add(public)
    for match in _EXPORT_DEFAULT_IDENT.finditer(code):
        name = match.group("name")
        if name in {"function", "class", "async", "abstract"}:
            continue
        exports.exported.add(name)
        if name in local_functions:
            exports.functions.add(name)
    return exports


def python_exports(source: str) -> ModuleExports:
    tree = ast.parse(source)
    exports = ModuleExports()
    declared_all: set[str] | None = None
    defined: set[str] = set()
    functions: set[str] = set()

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            defined.add(node.name)
            functions.add(node.name)
        elif isinstance(node, ast.ClassDef):
            defined.add(node.name)
        elif isinstance(node, (ast.Assign, ast.AnnAssign)):
            targets = node.targets if isinstance(node, ast.Assign) else [node.target]
            for target in targets:
                if isinstance(target, ast.Name):
                    if target.id == "__all__":
                        declared_all = _literal_names(node.value)
                    else:
                        defined.add(target.id)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                if alias.name != "*":
                    defined.add(alias.asname or alias.name.split(".")[0])

    if declared_all is not None:
        exports.exported = declared_all
    else:
        exports.exported = {name for name in defined if not name.startswith("_")}
    exports.functions = functions & exports.exported
    return exports


def _literal_names(node: ast.expr | None) -> set[str]:
    if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
        return {
            item.value
            for item in node.elts
            if isinstance(item, ast.Constant) and isinstance(item.value, str)
        }
    return set()


class ArtifactVerifier:
    """Checks artifact claims against the real output tree."""

    def __init__(self, root: Path, source_dirs: Iterable[str] = ("src", "lib", "app", ".")) -> None:
        self.root = root.resolve()
        self.source_dirs = list(source_dirs)

    def _resolve(self, relative: str) -> Path | None:
        candidate = (self.root / relative).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            return None
        return candidate

    def module_exports(self, path: Path) -> ModuleExports | None:
        try:
            source = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None
        if path.suffix in PYTHON_SUFFIXES:
            try:
                return python_exports(source)
            except SyntaxError:
                logger.debug("Cannot parse %s; treating it as exporting nothing", path)
                return ModuleExports()
        if path.suffix in SCRIPT_SUFFIXES:
            return script_exports(source)
        return None

    def _symbol_in(self, path: Path, name: str, kind: ArtifactKind) -> bool:
        exports = self.module_exports(path)
        if exports is None:
            return False
        if kind == ArtifactKind.FUNCTION:
            return name in exports.functions
        return name in exports.exported

    def _candidate_sources(self) -> list[Path]:
        seen: set[Path] = set()
        candidates: list[Path] = []
        suffixes = PYTHON_SUFFIXES | SCRIPT_SUFFIXES
        for source_dir in self.source_dirs:
            base = self._resolve(source_dir)
            if base is None or not base.is_dir():
                continue
            for path in sorted(base.rglob("*")):
                if path.suffix not in suffixes or not path.is_file():
                    continue
                if any(part in SKIPPED_DIRS for part in path.relative_to(self.root).parts):
                    continue
                if path not in seen:
                    seen.add(path)
                    candidates.append(path)
        return candidates

    def check(self, claim: ArtifactClaim) -> str | None:
        """Return None when the claim holds, otherwise the reason it does not."""
        if claim.kind == ArtifactKind.FILE:
            target = self._resolve(claim.identifier)
            if target is None:
                return f"{claim.identifier} is outside the output tree"
            if not target.is_file():
                return f"file {claim.identifier} does not exist"
            return None

        if claim.path:
            target = self._resolve(claim.path)
            if target is None or not target.is_file():
                return f"source file {claim.path} for {claim.identifier} does not exist"
            if self._symbol_in(target, claim.identifier, claim.kind):
                return None
            return f"{claim.path} does not export {claim.kind} {claim.identifier}"

        for path in self._candidate_sources():
            if self._symbol_in(path, claim.identifier, claim.kind):
                return None
        return f"no source file exports {claim.kind} {claim.identifier}"

    def verify_claim(self, claim: ArtifactClaim) -> bool:
        return self.check(claim) is None

    def verify(self, claims: Iterable[ArtifactClaim]) -> VerificationReport:
        report = VerificationReport()
        for claim in claims:
            reason = self.check(claim)
            if reason is None:
                report.verified.append(claim)
                continue
            warning = UnverifiedArtifact(
                f"unverified claim {claim.identifier}: {reason}",
                task_id=claim.source_task_id,
            )
            logger.warning("%s", warning)
            report.warnings.append(warning)
        return report
