"""Heuristic classification of captured command output."""
from __future__ import annotations

import re
from typing import List, Optional

from .models import Analysis, ErrorLocation


ERROR_PATTERNS = [
    re.compile(r"Error:", re.I),
    re.compile(r"\bException\b", re.I),
    re.compile(r"\bTypeError\b", re.I),
    re.compile(r"\bReferenceError\b", re.I),
    re.compile(r"\bSyntaxError\b", re.I),
    re.compile(r"\bUnhandledRejection\b", re.I),
    re.compile(r"\bAssertionError\b", re.I),
    re.compile(r"\bFAIL(?:ED)?\b", re.I),
    re.compile(r"\bEADDRINUSE\b", re.I),
    re.compile(r"\bENOENT\b", re.I),
    re.compile(r"^Traceback \(most recent call last\)", re.I),
]

STACK_LINE = re.compile(r"^\s*(at\s+|File \"[^\"]+\", line \d+)", re.I)
WARNING_LINE = re.compile(r"\bwarn(?:ing)?\b", re.I)

TEST_FAIL_HINTS = [
    re.compile(r"\bTest Suites?:\s*.*failed", re.I),
    re.compile(r"\bTests?:\s*.*failed", re.I),
    re.compile(r"\bexpected\b.*\breceived\b", re.I),
    re.compile(r"\b\d+ failed\b", re.I),
]

TIMEOUT_HINTS = [
    re.compile(r"\btimeout\b", re.I),
    re.compile(r"\btimed out\b", re.I),
]

_SOURCE_EXT = r"(?:js|jsx|ts|tsx|mjs|cjs|json|py|java|cpp|cc|c|hpp|h|go|rs|rb)"
LOCATION_PATTERNS = [
    re.compile(rf"(?P<file>[^\s:()\"]+?\.{_SOURCE_EXT}):(?P<line>\d+):(?P<col>\d+)"),
    re.compile(rf"(?P<file>[^\s:()\"]+?\.{_SOURCE_EXT}):(?P<line>\d+)"),
    re.compile(r"(?P<file>[^\s()\"]+?\.(?:ts|tsx|js|jsx))\((?P<line>\d+),(?P<col>\d+)\)"),
    re.compile(rf"File \"(?P<file>[^\"]+?\.{_SOURCE_EXT})\", line (?P<line>\d+)"),
]


def analyze_output(stdout: Optional[str], stderr: Optional[str]) -> Analysis:
    """Classify stdout/stderr of one execution into errors, warnings and a primary failure."""
    stdout = stdout or ""
    stderr = stderr or ""
    combined = f"{stdout}\n{stderr}".strip()
    lines = [line.rstrip() for line in combined.splitlines() if line.strip()]

    errors: List[str] = []
    warnings: List[str] = []
    stack: List[str] = []
    for line in lines:
        if any(pattern.search(line) for pattern in ERROR_PATTERNS):
            errors.append(line)
        elif STACK_LINE.search(line):
            stack.append(line)
        elif WARNING_LINE.search(line):
            warnings.append(line)

    error_detected = bool(errors) or bool(stderr.strip())
    stack_detected = bool(stack)

    if error_detected and stack_detected:
        confidence = 90
    elif error_detected:
        confidence = 75
    elif stack_detected:
        confidence = 60
    elif warnings:
        confidence = 55
    else:
        confidence = 50

    parts: List[str] = []
    if error_detected:
        parts.append(f"Detected {len(errors)} error line{'s' if len(errors) != 1 else ''}.")
    if stack_detected:
        parts.append(f"Stack trace depth: {len(stack)}.")
    if not parts:
        parts.append("No explicit error lines detected; inspect warnings.")

    first_stderr = next((line for line in stderr.splitlines() if line.strip()), "")
    primary_line = errors[0] if errors else (first_stderr or (warnings[0] if warnings else ""))
    primary = primary_line or "No primary error found (only logs & warnings)."
    locations = _extract_locations((errors + stack)[:50])

    return Analysis(
        error_detected=error_detected,
        stack_detected=stack_detected,
        errors=errors,
        warnings=warnings,
        stack=stack,
        summary=f"{' '.join(parts)} Primary: {primary}",
        confidence=confidence,
        primary_error_line=primary_line or None,
        primary_error_kind=classify_error_kind(primary_line, combined),
        primary_locations=locations or None,
        language_guess=guess_language(combined),
    )


def analyze_logs(raw: Optional[str]) -> Analysis:
    """Analyze a single raw log blob as if it had been written to stderr."""
    return analyze_output("", raw or "")


def guess_language(text: str) -> str:
    lowered = text.lower()
    if "traceback (most recent call last)" in lowered or ".py" in lowered:
        return "python"
    if "typescript" in lowered or ".ts(" in lowered or "tsc " in lowered or ".tsx" in lowered:
        return "typescript"
    if any(token in lowered for token in ("node:", ".js:", "typeerror:", "referenceerror:")):
        return "javascript"
    if "java.lang." in lowered or ".java:" in lowered:
        return "java"
    if any(token in lowered for token in ("error: expected", "fatal error:", ".cpp:", ".hpp:")):
        return "cpp"
    return "unknown"


def classify_error_kind(line: str, text: str) -> str:
    lowered = line.lower()
    all_lower = text.lower()

    if any(token in lowered for token in ("syntaxerror", "parse error", "unexpected token", "unexpected end of input")):
        return "syntax"
    if "typeerror" in lowered:
        return "type"
    if any(token in lowered for token in ("referenceerror", "nameerror", "is not defined", "cannot find name")):
        return "reference"
    if any(pattern.search(lowered) or pattern.search(all_lower) for pattern in TIMEOUT_HINTS):
        return "timeout"
    if "assertionerror" in lowered or any(
        pattern.search(lowered) or pattern.search(all_lower) for pattern in TEST_FAIL_HINTS
    ):
        return "test-failure"
    if "error" in lowered or "exception" in lowered or "error" in all_lower or "exception" in all_lower:
        return "runtime"
    return "unknown"


def _extract_locations(lines: List[str]) -> List[ErrorLocation]:
    locations: List[ErrorLocation] = []
    for line in lines:
        for pattern in LOCATION_PATTERNS:
            match = pattern.search(line)
            if not match:
                continue
            groups = match.groupdict()
            locations.append(
                ErrorLocation(
                    file=groups["file"],
                    line=int(groups["line"]) if groups.get("line") else None,
                    column=int(groups["col"]) if groups.get("col") else None,
                    raw=line,
                )
            )
            break
    return locations
