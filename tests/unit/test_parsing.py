from task_agent.graph.parsing import (
    DEFAULT_SUMMARY,
    fallback_plan,
    parse_final_payload,
    parse_plan,
    parse_step_payload,
)


def test_parse_plan_extracts_json_from_surrounding_text() -> None:
    raw = 'Here you go:\n```json\n{"planSteps": [" Research ", "", "Draft", 3]}\n```'

    assert parse_plan(raw) == ["Research", "Draft", "3"]


def test_parse_plan_caps_steps_and_tolerates_garbage() -> None:
    steps = ", ".join(f'"s{index}"' for index in range(12))

    assert parse_plan('{"planSteps": [' + steps + "]}", max_steps=7) == [
        f"s{index}" for index in range(7)
    ]
    assert parse_plan("no json here") == []
    assert parse_plan('{"planSteps": "Research"}') == []
    assert parse_plan("{broken") == []
    assert parse_plan(None) == []


def test_parse_step_payload_falls_back_to_raw_text() -> None:
    plain = parse_step_payload("  Just some markdown  ")
    assert plain.step_summary == ""
    assert plain.step_output_markdown == "Just some markdown"

    parsed = parse_step_payload('{"stepSummary": "done", "stepOutputMarkdown": "## Out"}')
    assert parsed.step_summary == "done"
    assert parsed.step_output_markdown == "## Out"


def test_parse_final_payload_fallbacks() -> None:
    no_json = parse_final_payload("A finished report.", "draft text")
    assert no_json.summary == DEFAULT_SUMMARY
    assert no_json.result_markdown == "A finished report."

    empty = parse_final_payload("", "draft text")
    assert empty.result_markdown == "draft text"

    invalid = parse_final_payload("{oops}", "draft text")
    assert invalid.summary == DEFAULT_SUMMARY
    assert invalid.result_markdown == "draft text"

    partial = parse_final_payload('{"summary": "Short"}', "draft text")
    assert partial.summary == "Short"
    assert partial.result_markdown == "draft text"


def test_fallback_plan_mentions_task_title() -> None:
    steps = fallback_plan("Book venue")

    assert len(steps) == 3
    assert "Book venue" in steps[0]
