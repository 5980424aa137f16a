import asyncio
import json

from snaprun.models import Analysis, ErrorLocation, RunRecord, RunStatus
from snaprun.patches import ParseErr, ParseOk, PatchGenerator, parse_suggestions
from snaprun.policy import SafetyPolicy


class _FakeClient:
    def __init__(self, text, available=True):
        self.text = text
        self.available = available
        self.prompts = []

    def generate_text(self, prompt, instructions=None):
        self.prompts.append((prompt, instructions))
        return self.text


def _failed_record(repo) -> RunRecord:
    return RunRecord(
        run_id="abc-123456",
        repo_path=str(repo),
        command="python app.py",
        status=RunStatus.FAILED,
        analysis=Analysis(
            error_detected=True,
            stack_detected=True,
            primary_error_line="NameError: name 'x' is not defined",
            primary_error_kind="reference",
            primary_locations=[ErrorLocation(file="hello.txt", line=1), ErrorLocation(file="../outside.txt", line=2)],
        ),
    )


def test_parse_accepts_valid_and_rejects_invalid_entries():
    raw = json.dumps(
        {
            "suggestions": [
                {"id": "s1", "confidence": 80, "files": [{"path": "app.py", "before": "x", "after": "y"}]},
                {"id": 7, "files": [{"path": "app.py", "after": "y"}]},
                {"files": []},
                "nonsense",
            ]
        }
    )
    results = parse_suggestions(raw)
    assert isinstance(results[0], ParseOk)
    assert results[0].suggestion.files[0].path == "app.py"
    assert [type(result) for result in results[1:]] == [ParseErr, ParseErr, ParseErr]
    assert any(error.startswith("id") for error in results[1].errors)
    assert results[2].errors == ["files: must not be empty"]
    assert results[3].index == 3


def test_parse_extracts_json_from_surrounding_text():
    raw = 'Here you go:\n{"suggestions": [{"files": [{"path": "a.py", "after": "pass"}]}]}\nThanks'
    results = parse_suggestions(raw)
    assert len(results) == 1 and isinstance(results[0], ParseOk)


def test_parse_reports_unusable_output():
    assert parse_suggestions("") == []
    not_json = parse_suggestions("no json here")
    assert isinstance(not_json[0], ParseErr) and not_json[0].index == -1
    no_list = parse_suggestions('{"suggestions": "many"}')
    assert no_list[0].errors == ["output has no 'suggestions' list"]


def test_generator_filters_through_policy(repo):
    client = _FakeClient(
        json.dumps(
            {
                "suggestions": [
                    {"id": "good", "files": [{"path": "hello.txt", "after": "hi\n"}]},
                    {"id": "bad", "files": [{"path": ".env", "after": "TOKEN=1"}]},
                ]
            }
        )
    )
    outcome = asyncio.run(PatchGenerator(client, SafetyPolicy()).generate(_failed_record(repo)))

    assert [suggestion.id for suggestion in outcome.accepted] == ["good"]
    assert outcome.rejected[0]["index"] == 1
    assert outcome.rejected[0]["errors"][0].startswith("PATCH_SENSITIVE_FILE")
    prompt = json.loads(client.prompts[0][0])
    assert prompt["command"] == "python app.py"
    assert prompt["contextFiles"] == [{"path": "hello.txt", "content": "hello\n"}]


def test_generator_without_model(repo):
    client = _FakeClient(None, available=False)
    outcome = asyncio.run(PatchGenerator(client).generate(_failed_record(repo)))
    assert outcome.model_available is False
    assert outcome.accepted == []
    assert client.prompts == []
