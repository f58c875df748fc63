#!/usr/bin/env python3
"""Gate G2: Security & PII check for source files.

Fails if, anywhere under src/:
- print( is called in runtime code
- a logger call interpolates a PII-bearing name (phone, remote_jid, content,
  push_name, transcript, ...) into its message or format args
- a logger call passes extra= without wrapping fields in safe_log_context

Usage:
    python scripts/gate_security_pii.py
"""

import ast
import sys
from pathlib import Path

# Names that carry PII in this codebase
SENSITIVE_NAMES = frozenset({
    "phone",
    "remote_jid",
    "jid",
    "content",
    "push_name",
    "push_names",
    "display_name",
    "transcript",
    "completion",
    "payload",
    "raw",
    "text",
})

LOGGER_METHODS = frozenset({"debug", "info", "warning", "error", "critical", "exception"})


def _referenced_names(node: ast.AST) -> set[str]:
    names: set[str] = set()
    for child in ast.walk(node):
        if isinstance(child, ast.Name):
            names.add(child.id)
        elif isinstance(child, ast.Attribute):
            names.add(child.attr)
        elif isinstance(child, ast.Subscript) and isinstance(child.slice, ast.Constant):
            if isinstance(child.slice.value, str):
                names.add(child.slice.value)
    return names


def _is_logger_call(node: ast.Call) -> bool:
    func = node.func
    return (
        isinstance(func, ast.Attribute)
        and func.attr in LOGGER_METHODS
        and isinstance(func.value, ast.Name)
        and func.value.id == "logger"
    )


def _extra_is_safe(value: ast.AST) -> bool:
    """extra= must be {"extra_fields": safe_log_context(...)}."""
    if not isinstance(value, ast.Dict):
        return False
    for key, item in zip(value.keys, value.values):
        if not (isinstance(key, ast.Constant) and key.value == "extra_fields"):
            return False
        if not (
            isinstance(item, ast.Call)
            and isinstance(item.func, ast.Name)
            and item.func.id == "safe_log_context"
        ):
            return False
    return True


def check_source(source: str, filename: str) -> list[str]:
    """Check one module's source. Returns list of error messages."""
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError as e:
        return [f"{filename}:{e.lineno}: syntax error"]

    errors: list[str] = []
    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue

        if isinstance(node.func, ast.Name) and node.func.id == "print":
            errors.append(f"{filename}:{node.lineno}: print() not allowed in runtime code")
            continue

        if not _is_logger_call(node):
            continue

        leaked = set()
        for arg in node.args:
            if isinstance(arg, ast.Constant):
                continue
            leaked |= _referenced_names(arg) & SENSITIVE_NAMES
        if leaked:
            errors.append(
                f"{filename}:{node.lineno}: logger call interpolates PII "
                f"({', '.join(sorted(leaked))})"
            )

        for keyword in node.keywords:
            if keyword.arg == "extra" and not _extra_is_safe(keyword.value):
                errors.append(
                    f"{filename}:{node.lineno}: logger extra= must be "
                    '{"extra_fields": safe_log_context(...)}'
                )
    return errors


def check_file(filepath: Path) -> list[str]:
    """Check a single file for violations. Returns list of error messages."""
    try:
        content = filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []
    return check_source(content, str(filepath))


def main() -> int:
    """Run gate check on src directory."""
    src_dir = Path("src")

    if not src_dir.exists():
        src_dir = Path(__file__).parent.parent / "src"

    if not src_dir.exists():
        sys.stderr.write("Error: src directory not found\n")
        return 1

    all_errors: list[str] = []
    for pyfile in sorted(src_dir.rglob("*.py")):
        all_errors.extend(check_file(pyfile))

    if all_errors:
        sys.stderr.write("Gate G2 FAILED - Security/PII violations found:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("Gate G2 PASSED - No security/PII violations found\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
