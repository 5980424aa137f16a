"""Patch candidate generation and strict parsing of model output."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .models import PatchSuggestion, RunRecord
from .openai_client import OpenAIClient
from .policy import SafetyPolicy


LOGGER = logging.getLogger("snaprun.patches")

MAX_CONTEXT_FILES = 6
MAX_CHARS_PER_FILE = 12_000
MAX_CANDIDATES = 3

SYSTEM_PROMPT = " ".join(
    [
        "You are an expert software repair agent.",
        "Return ONLY valid JSON. No markdown. No commentary.",
        "Propose minimal safe edits that fix the error.",
        "Use repo-relative file paths only. Never absolute paths.",
        'If uncertain, return {"suggestions": []}.',
    ]
)

OUTPUT_SCHEMA = {
    "suggestions": [
        {
            "id": "string-optional",
            "confidence": "number-0-to-100-optional",
            "notes": "string-optional",
            "files": [{"path": "repo-relative-path", "before": "string", "after": "string"}],
        }
    ]
}

_JSON_OBJECT = re.compile(r"\{.*\}", re.S)


@dataclass(frozen=True)
class ParseOk:
    index: int
    suggestion: PatchSuggestion


@dataclass(frozen=True)
class ParseErr:
    index: int
    errors: List[str]


ParseResult = Union[ParseOk, ParseErr]


def _load_payload(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(raw)
        if not match:
            raise
        return json.loads(match.group(0))


def parse_suggestions(raw: Optional[str]) -> List[ParseResult]:
    """
    Validate model output entry by entry.

    Each element of ``suggestions`` yields either ``ParseOk`` or ``ParseErr``; values of the
    wrong type are rejected rather than coerced. Output that is not a JSON object with a
    ``suggestions`` list produces a single ``ParseErr`` with index ``-1``.
    """
    if not raw or not raw.strip():
        return []
    try:
        payload = _load_payload(raw)
    except json.JSONDecodeError as exc:
        return [ParseErr(index=-1, errors=[f"output is not valid JSON: {exc.msg}"])]

    entries = payload.get("suggestions") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        return [ParseErr(index=-1, errors=["output has no 'suggestions' list"])]

    results: List[ParseResult] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            results.append(ParseErr(index=index, errors=["suggestion is not an object"]))
            continue
        try:
            suggestion = PatchSuggestion.model_validate(entry, strict=True)
        except ValidationError as exc:
            errors = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
            results.append(ParseErr(index=index, errors=errors))
            continue
        if not suggestion.files:
            results.append(ParseErr(index=index, errors=["files: must not be empty"]))
            continue
        results.append(ParseOk(index=index, suggestion=suggestion))
    return results


@dataclass
class GenerationOutcome:
    accepted: List[PatchSuggestion] = field(default_factory=list)
    rejected: List[Dict[str, Any]] = field(default_factory=list)
    model_available: bool = True


class PatchGenerator:
    """Ask the model for patch candidates and keep only those the policy accepts."""

    def __init__(self, client: OpenAIClient, policy: Optional[SafetyPolicy] = None) -> None:
        self._client = client
        self._policy = policy or SafetyPolicy()

    async def generate(self, run: RunRecord) -> GenerationOutcome:
        if not self._client.available:
            LOGGER.info("Patch generation skipped for %s: model not configured", run.run_id)
            return GenerationOutcome(model_available=False)

        prompt = self.build_prompt(run)
        raw = await asyncio.to_thread(self._client.generate_text, prompt, SYSTEM_PROMPT)
        outcome = GenerationOutcome()
        for result in parse_suggestions(raw):
            if isinstance(result, ParseErr):
                outcome.rejected.append({"index": result.index, "errors": result.errors})
                continue
            decision = self._policy.check_patch_paths(file.path for file in result.suggestion.files)
            if not decision.ok:
                outcome.rejected.append(
                    {"index": result.index, "errors": [f"{decision.code}: {decision.reason}"]}
                )
                continue
            if len(outcome.accepted) < MAX_CANDIDATES:
                outcome.accepted.append(result.suggestion)
        LOGGER.info(
            "Patch generation for %s: %s accepted, %s rejected",
            run.run_id,
            len(outcome.accepted),
            len(outcome.rejected),
        )
        return outcome

    def build_prompt(self, run: RunRecord) -> str:
        analysis = run.analysis
        primary_error = ""
        if analysis is not None:
            primary_error = analysis.primary_error_line or analysis.summary
        user = {
            "task": "Generate code patches to fix the failing project.",
            "command": run.command,
            "primaryError": (primary_error or "")[:2000],
            "errorKind": analysis.primary_error_kind if analysis else None,
            "contextFiles": self._context_files(run),
            "outputSchema": OUTPUT_SCHEMA,
        }
        return json.dumps(user)

    def _context_files(self, run: RunRecord) -> List[Dict[str, str]]:
        if run.analysis is None or not run.analysis.primary_locations:
            return []
        repo = Path(run.repo_path).resolve()
        files: List[Dict[str, str]] = []
        seen = set()
        for location in run.analysis.primary_locations:
            if len(files) >= MAX_CONTEXT_FILES:
                break
            candidate = (repo / location.file).resolve()
            if candidate in seen or repo not in candidate.parents or not candidate.is_file():
                continue
            seen.add(candidate)
            try:
                content = candidate.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            files.append({"path": str(candidate.relative_to(repo)), "content": content[:MAX_CHARS_PER_FILE]})
        return files
