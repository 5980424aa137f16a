from snaprun.analyzer import analyze_logs, analyze_output


def test_error_line_on_stderr():
    analysis = analyze_output("", "Error: boom\n")
    assert analysis.error_detected is True
    assert analysis.stack_detected is False
    assert analysis.errors == ["Error: boom"]
    assert analysis.confidence == 75
    assert analysis.primary_error_line == "Error: boom"
    assert "Primary: Error: boom" in analysis.summary


def test_node_stack_with_location():
    stderr = (
        "TypeError: Cannot read properties of undefined\n"
        "    at main (/app/src/index.js:10:5)\n"
        "    at Object.<anonymous> (/app/src/index.js:20:1)\n"
    )
    analysis = analyze_output("", stderr)
    assert analysis.stack_detected is True
    assert analysis.confidence == 90
    assert analysis.primary_error_kind == "type"
    assert analysis.language_guess == "javascript"
    assert analysis.primary_locations[0].file == "/app/src/index.js"
    assert analysis.primary_locations[0].line == 10


def test_python_traceback():
    stderr = (
        "Traceback (most recent call last):\n"
        '  File "app/main.py", line 3, in <module>\n'
        "NameError: name 'x' is not defined\n"
    )
    analysis = analyze_logs(stderr)
    assert analysis.error_detected is True
    assert analysis.language_guess == "python"
    assert analysis.errors[-1].startswith("NameError")
    assert any(location.file == "app/main.py" and location.line == 3 for location in analysis.primary_locations)


def test_clean_output():
    analysis = analyze_output("all tests passed\n", "")
    assert analysis.error_detected is False
    assert analysis.confidence == 50
    assert analysis.primary_error_line is None
    assert analysis.summary.startswith("No explicit error lines detected")
