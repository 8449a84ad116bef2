from datetime import UTC, datetime

import pytest

from task_agent.graph.engine import CORRUPT_STATE_MESSAGE
from task_agent.graph.runtime import RunSuperseded
from task_agent.graph.state import (
    AgentRunState,
    decode_state,
    encode_state,
    initial_graph_state,
)
from task_agent.storage.models import ConnectorTokenRecord
from task_agent.tools.google import SCOPE_GMAIL_SEND

from conftest import (
    USER_ID,
    build_harness,
    engine_config_for_tests,
    final_reply,
    plan_reply,
    step_reply,
    tool_call,
)

FINAL_MARKDOWN = "# Launch plan\n\nA complete plan with vendor options and a timeline."


def _event(harness, task_id, kind):
    return next(event for event in harness.events(task_id) if event.kind == kind)


def test_run_plans_executes_and_finalizes(harness) -> None:
    task = harness.create_task()
    harness.script.add(
        plan_reply("Research options", "Draft plan"),
        step_reply("Found 3 options", "## Options\n- A\n- B\n- C"),
        step_reply("Drafted timeline", "## Timeline\nWeek 1: kickoff"),
        final_reply("Launch plan ready", FINAL_MARKDOWN),
    )

    harness.start_and_drain(task.task_id)

    record = harness.task(task.task_id)
    assert record.agent_status == "succeeded"
    assert record.agent_progress == 100
    assert record.agent_phase == "Ready"
    assert record.agent_summary == "Launch plan ready"
    assert record.agent_result == FINAL_MARKDOWN
    assert record.agent_plan == ["Research options", "Draft plan"]
    assert record.agent_state is None
    assert record.agent_completed_at is not None
    assert [event.title for event in harness.events(task.task_id)] == [
        "Queued",
        "Planning",
        "Plan ready",
        "Step 1/2",
        "Completed step 1",
        "Step 2/2",
        "Completed step 2",
        "Finalizing",
        "Output ready",
    ]
    assert "[Step 1] Research options: Found 3 options" in harness.script.prompts[2]
    notifications = harness.storage.list_notifications(USER_ID)
    assert notifications[0].title == "Agent finished a task"
    assert notifications[0].body == "Launch plan ready"
    assert notifications[0].action_url.endswith(f"taskId={task.task_id}")


def test_step_budget_splits_run_into_continuations() -> None:
    harness = build_harness(config=engine_config_for_tests(max_steps_per_run=1))
    task = harness.create_task()
    harness.script.add(
        plan_reply("One", "Two", "Three"),
        step_reply("1", "Step one output"),
        step_reply("2", "Step two output"),
        step_reply("3", "Step three output"),
        final_reply("Done", FINAL_MARKDOWN),
    )

    harness.start_and_drain(task.task_id)

    continues = [m.step_index for m in harness.scheduler.sent if m.kind == "continue"]
    assert continues == [1, 2, 3]
    record = harness.task(task.task_id)
    assert record.agent_status == "succeeded"
    assert record.agent_result == FINAL_MARKDOWN
    titles = [event.title for event in harness.events(task.task_id)]
    assert titles.count("Continuing") == 3


def test_elapsed_time_budget_triggers_yield() -> None:
    harness = build_harness(
        config=engine_config_for_tests(max_elapsed_ms=5000), seconds_per_call=3.0
    )
    task = harness.create_task()
    harness.script.add(
        plan_reply("One", "Two", "Three"),
        step_reply("1", "Step one output"),
        step_reply("2", "Step two output"),
        step_reply("3", "Step three output"),
        final_reply("Done", FINAL_MARKDOWN),
    )

    harness.start_and_drain(task.task_id)

    continues = [m.step_index for m in harness.scheduler.sent if m.kind == "continue"]
    assert continues == [1, 3]
    assert harness.task(task.task_id).agent_status == "succeeded"


def test_duplicate_continuation_is_ignored() -> None:
    harness = build_harness(config=engine_config_for_tests(max_steps_per_run=1))
    task = harness.create_task()
    harness.script.add(
        plan_reply("One", "Two", "Three"),
        step_reply("1", "Step one output"),
        step_reply("2", "Step two output"),
        step_reply("3", "Step three output"),
        final_reply("Done", FINAL_MARKDOWN),
    )
    harness.engine.start(USER_ID, task.task_id)
    harness.scheduler.drain(max_messages=1)
    continuation = harness.scheduler.sent[-1]
    assert continuation.step_index == 1

    harness.scheduler.drain(max_messages=1)
    calls = harness.script.calls

    assert harness.engine.handle(continuation) is None
    assert harness.script.calls == calls
    assert decode_state(harness.task(task.task_id).agent_state).step_index == 2

    harness.scheduler.drain()
    assert harness.task(task.task_id).agent_status == "succeeded"


def test_restart_supersedes_the_earlier_run(harness) -> None:
    task = harness.create_task()
    harness.script.add(
        plan_reply("Only step"),
        step_reply("ok", "Single step output"),
        final_reply("Done", FINAL_MARKDOWN),
    )

    assert harness.engine.start(USER_ID, task.task_id)
    assert harness.engine.start(USER_ID, task.task_id)
    first, second = harness.scheduler.sent
    assert first.run_id != second.run_id

    harness.scheduler.drain()

    assert harness.script.calls == 3
    record = harness.task(task.task_id)
    assert record.agent_status == "succeeded"
    assert record.agent_run_id == second.run_id


def test_restart_during_a_step_discards_the_old_output(harness) -> None:
    task = harness.create_task()

    def restart_then_reply() -> str:
        assert harness.engine.start(USER_ID, task.task_id)
        return step_reply("stale", "STALE OUTPUT FROM THE FIRST RUN")

    harness.script.add(plan_reply("Only step"), restart_then_reply)
    harness.engine.start(USER_ID, task.task_id)
    harness.scheduler.drain(max_messages=1)

    record = harness.task(task.task_id)
    assert record.agent_status == "queued"
    assert record.agent_result is None
    assert record.agent_state is None
    assert [event.title for event in harness.events(task.task_id)] == ["Queued"]

    harness.script.add(
        plan_reply("Only step"),
        step_reply("ok", "Fresh step output"),
        final_reply("Done", FINAL_MARKDOWN),
    )
    harness.scheduler.drain()

    record = harness.task(task.task_id)
    assert record.agent_status == "succeeded"
    assert record.agent_result == FINAL_MARKDOWN
    titles = [event.title for event in harness.events(task.task_id)]
    assert titles.count("Completed step 1") == 1


def test_only_one_invocation_advances_a_checkpoint(harness) -> None:
    task = harness.create_task()
    checkpoint = AgentRunState(plan_steps=["One", "Two"])
    stored = harness.storage.patch_task(
        USER_ID,
        task.task_id,
        {"agent_status": "running", "agent_state": encode_state(checkpoint), "agent_run_id": "r1"},
    )

    def invocation(summary: str):
        run_state = AgentRunState(plan_steps=["One", "Two"], step_index=1, context_summary=summary)
        return initial_graph_state(
            user_id=USER_ID,
            task_id=task.task_id,
            run_id="r1",
            task=stored,
            run_state=run_state,
            started_at=0.0,
        )

    first, second = invocation("first"), invocation("second")
    harness.engine.runtime.persist(first)
    with pytest.raises(RunSuperseded):
        harness.engine.runtime.persist(second)

    assert decode_state(harness.task(task.task_id).agent_state).context_summary == "first"


def test_start_unknown_task_returns_false(harness) -> None:
    assert harness.engine.start(USER_ID, "missing") is False
    assert harness.scheduler.sent == []


def test_question_pauses_until_answered(harness) -> None:
    task = harness.create_task()
    harness.script.add(
        tool_call("ask_user", question="Which market?", options=["EU", "US"]),
        plan_reply("Research the EU market"),
        step_reply("Researched", "## EU market\nDetails here."),
        final_reply("Market brief ready", FINAL_MARKDOWN),
    )

    harness.start_and_drain(task.task_id)

    record = harness.task(task.task_id)
    assert record.agent_status == "running"
    assert record.agent_phase == "Waiting for your answer"
    assert record.agent_summary == "Needs your input to continue."
    question = _event(harness, task.task_id, "question")
    state = decode_state(record.agent_state)
    assert state.waiting_for_kind == "question"
    assert state.waiting_for_event_id == question.event_id

    # Nothing moves until the user answers.
    assert harness.engine.continue_run(USER_ID, task.task_id, record.agent_run_id) == "waiting"
    assert harness.script.calls == 1

    harness.engine.answer_question(USER_ID, question.event_id, "EU")
    harness.scheduler.drain()

    assert "Answer: EU" in harness.script.prompts[1]
    record = harness.task(task.task_id)
    assert record.agent_status == "succeeded"
    assert record.agent_plan == ["Research the EU market"]
    titles = [event.title for event in harness.events(task.task_id)]
    assert "Answered question" in titles
    assert "Resuming" not in titles

    again = harness.engine.answer_question(USER_ID, question.event_id, "US")
    assert again.answer == "EU"


def test_repeated_answer_resumes_the_run_once(harness) -> None:
    task = harness.create_task()
    harness.script.add(tool_call("ask_user", question="Which market?"))
    harness.start_and_drain(task.task_id)
    question = _event(harness, task.task_id, "question")

    def resumes():
        return [m for m in harness.scheduler.sent if m.event_id == question.event_id]

    def answer_again_mid_call() -> str:
        assert harness.engine.answer_question(USER_ID, question.event_id, "US").answer == "EU"
        assert len(resumes()) == 1
        # Redelivering the resume finds the wait already picked up.
        assert harness.engine.handle(resumes()[0]) is None
        return plan_reply("Research the EU market", "Summarize findings")

    harness.script.add(
        answer_again_mid_call,
        step_reply("Researched", "## EU market\nDetails here."),
        step_reply("Summarized", "## Summary\nKey findings."),
        final_reply("Market brief ready", FINAL_MARKDOWN),
    )
    harness.engine.answer_question(USER_ID, question.event_id, "EU")
    harness.scheduler.drain()

    assert harness.task(task.task_id).agent_status == "succeeded"
    assert harness.script.calls == 5
    titles = [event.title for event in harness.events(task.task_id)]
    assert titles.count("Answered question") == 1
    assert titles.count("Completed step 1") == 1
    assert titles.count("Completed step 2") == 1


def _connect_gmail(harness) -> None:
    harness.storage.save_connector_token(
        ConnectorTokenRecord(
            user_id=USER_ID,
            provider="gmail",
            access_token="gmail-token",
            scopes=[SCOPE_GMAIL_SEND],
            updated_at=datetime.now(UTC),
        )
    )


EMAIL = {"to": "dana@example.com", "subject": "Agenda", "body": "See you Monday."}


def test_approved_action_runs_after_resume(harness, fake_http) -> None:
    _connect_gmail(harness)
    fake_http.add(
        "POST", "https://gmail.googleapis.com/gmail/v1/users/me/messages/send", {"id": "m-1"}
    )
    task = harness.create_task("Email the agenda to Dana")
    harness.script.add(
        plan_reply("Send the agenda"),
        tool_call("gmail_send_email", **EMAIL),
        tool_call("gmail_send_email", **EMAIL),
        step_reply("Sent", "## Email\nSent the agenda to Dana."),
        final_reply("Agenda sent", FINAL_MARKDOWN),
    )

    harness.start_and_drain(task.task_id)

    record = harness.task(task.task_id)
    assert record.agent_phase == "Waiting for approval"
    approval = _event(harness, task.task_id, "approval-request")
    assert approval.approval_action == "gmail_send_email"
    assert fake_http.requests == []

    harness.engine.respond_approval(USER_ID, approval.event_id, True)
    harness.scheduler.drain()

    assert harness.task(task.task_id).agent_status == "succeeded"
    assert len(fake_http.requests) == 1
    assert "The user APPROVED the action: gmail_send_email" in harness.script.prompts[2]
    titles = [event.title for event in harness.events(task.task_id)]
    assert "Approved: gmail_send_email" in titles
    assert "Tool result: gmail_send_email" in titles


def test_requested_approval_covers_sends_in_later_steps(harness, fake_http) -> None:
    _connect_gmail(harness)
    fake_http.add(
        "POST", "https://gmail.googleapis.com/gmail/v1/users/me/messages/send", {"id": "m-1"}
    )
    task = harness.create_task("Email the agenda to Dana")
    harness.script.add(
        plan_reply("Draft the agenda", "Send the agenda"),
        tool_call("request_approval", action="send_email", reason="Email the agenda to Dana."),
    )

    harness.start_and_drain(task.task_id)

    record = harness.task(task.task_id)
    assert record.agent_phase == "Waiting for approval"
    approval = _event(harness, task.task_id, "approval-request")
    assert approval.approval_action == "send_email"
    state = decode_state(record.agent_state)
    assert state.waiting_for_kind == "approval"
    assert state.waiting_for_event_id == approval.event_id
    assert state.step_index == 0

    # Continuing before the user decides changes nothing.
    assert harness.engine.continue_run(USER_ID, task.task_id, record.agent_run_id) == "waiting"
    assert harness.script.calls == 2
    assert decode_state(harness.task(task.task_id).agent_state).step_index == 0

    seen: list = []

    def send_under_saved_approval():
        seen.append(decode_state(harness.task(task.task_id).agent_state))
        return tool_call("gmail_send_email", **EMAIL)

    harness.script.add(
        step_reply("Drafted", "## Agenda\nKickoff, budget, timeline."),
        send_under_saved_approval,
        step_reply("Sent", "## Email\nSent the agenda to Dana."),
        final_reply("Agenda sent", FINAL_MARKDOWN),
    )
    harness.engine.respond_approval(USER_ID, approval.event_id, True)
    harness.scheduler.drain()

    assert harness.task(task.task_id).agent_status == "succeeded"
    assert "The user APPROVED the action: send_email" in harness.script.prompts[2]
    assert seen[0].step_index == 1
    assert seen[0].approved_tools == {"send_email": True}
    assert len(fake_http.requests) == 1
    kinds = [event.kind for event in harness.events(task.task_id)]
    assert kinds.count("approval-request") == 1


def test_denied_action_is_skipped(harness, fake_http) -> None:
    _connect_gmail(harness)
    task = harness.create_task("Email the agenda to Dana")
    harness.script.add(
        plan_reply("Send the agenda"),
        tool_call("gmail_send_email", **EMAIL),
        tool_call("gmail_send_email", **EMAIL),
        step_reply("Skipped", "## Email\nDrafted but not sent."),
        final_reply("Agenda drafted", FINAL_MARKDOWN),
    )
    harness.start_and_drain(task.task_id)
    approval = _event(harness, task.task_id, "approval-request")

    harness.engine.respond_approval(USER_ID, approval.event_id, False)
    harness.scheduler.drain()

    assert harness.task(task.task_id).agent_status == "succeeded"
    assert fake_http.requests == []
    assert any("User denied approval" in output for output in harness.script.tool_outputs)


def test_approval_without_action_keeps_approval_maps_empty(harness) -> None:
    task = harness.create_task()
    event = harness.storage.append_event(
        USER_ID, task.task_id, kind="approval-request", title="Approval requested"
    )
    harness.storage.update_event(USER_ID, event.event_id, {"approved": True})
    waiting = AgentRunState(
        plan_steps=["Only step"], waiting_for_event_id=event.event_id, waiting_for_kind="approval"
    )
    harness.storage.patch_task(
        USER_ID,
        task.task_id,
        {"agent_status": "running", "agent_state": encode_state(waiting), "agent_run_id": "r1"},
    )
    seen: list = []

    def step_after_resume() -> str:
        seen.append(decode_state(harness.task(task.task_id).agent_state))
        return step_reply("ok", "Single step output")

    harness.script.add(step_after_resume, final_reply("Done", FINAL_MARKDOWN))

    assert harness.engine.continue_run(USER_ID, task.task_id, "r1") == "succeeded"
    assert seen[0].approved_tools is None
    assert seen[0].denied_tools is None
    assert "The user APPROVED the action: the requested action" in harness.script.prompts[0]


def test_missing_ai_settings_fails_the_task() -> None:
    harness = build_harness(configure_user=False)
    task = harness.create_task()

    harness.start_and_drain(task.task_id)

    record = harness.task(task.task_id)
    assert record.agent_status == "failed"
    assert record.agent_phase == "Failed"
    assert record.agent_error == "Please configure AI settings first."
    assert record.agent_state is None
    assert _event(harness, task.task_id, "error").detail == "Please configure AI settings first."
    notification = harness.storage.list_notifications(USER_ID)[0]
    assert notification.title == "Agent failed a task"
    assert notification.body == "Task: Write a launch plan. Please configure AI settings first."


def test_short_step_output_fails(harness) -> None:
    task = harness.create_task()
    harness.script.add(plan_reply("Only step"), "ok")

    harness.start_and_drain(task.task_id)

    assert harness.task(task.task_id).agent_error == "Agent step 1 output was too short."


def test_short_final_output_fails(harness) -> None:
    task = harness.create_task()
    harness.script.add(
        plan_reply("Only step"),
        step_reply("ok", "Single step output"),
        final_reply("Done", "Too short"),
    )

    harness.start_and_drain(task.task_id)

    assert harness.task(task.task_id).agent_error == "Agent output was too short."


def test_model_error_fails_with_generic_message(harness) -> None:
    task = harness.create_task()
    harness.script.add(RuntimeError("provider down"))

    harness.start_and_drain(task.task_id)

    record = harness.task(task.task_id)
    assert record.agent_status == "failed"
    assert record.agent_error == "Agent generation failed."


def test_undecodable_state_fails_the_task(harness) -> None:
    task = harness.create_task()
    harness.storage.patch_task(
        USER_ID,
        task.task_id,
        {"agent_status": "running", "agent_state": "{bad", "agent_run_id": "run-1"},
    )

    assert harness.engine.continue_run(USER_ID, task.task_id, "run-1") == "failed"

    record = harness.task(task.task_id)
    assert record.agent_status == "failed"
    assert record.agent_error == CORRUPT_STATE_MESSAGE


def test_models_without_tools_get_workspace_snapshot() -> None:
    harness = build_harness(tools=False)
    task = harness.create_task()
    harness.script.add(
        plan_reply("Only step"),
        step_reply("ok", "Single step output"),
        final_reply("Done", FINAL_MARKDOWN),
    )

    harness.start_and_drain(task.task_id)

    assert harness.task(task.task_id).agent_status == "succeeded"
    assert "### list_tasks" in harness.script.prompts[0]
    assert "### list_tasks" in harness.script.prompts[1]
    tool_events = [e.title for e in harness.events(task.task_id) if e.kind == "tool"]
    assert tool_events.count("Tool: list_tasks") == 1


def test_final_output_streams_into_result() -> None:
    harness = build_harness(
        streaming=True,
        config=engine_config_for_tests(stream_final_output=True, stream_flush_chars=10),
    )
    task = harness.create_task()
    harness.script.add(
        plan_reply("Only step"),
        step_reply("ok", "Single step output"),
        FINAL_MARKDOWN,
    )

    harness.start_and_drain(task.task_id)

    record = harness.task(task.task_id)
    assert record.agent_status == "succeeded"
    assert record.agent_result == FINAL_MARKDOWN
    assert record.agent_summary == "Output ready to review."


def test_stream_failure_falls_back_to_single_request() -> None:
    harness = build_harness(
        streaming=True, config=engine_config_for_tests(stream_final_output=True)
    )
    task = harness.create_task()
    harness.script.add(
        plan_reply("Only step"),
        step_reply("ok", "Single step output"),
        RuntimeError("stream dropped"),
        final_reply("Recovered", FINAL_MARKDOWN),
    )

    harness.start_and_drain(task.task_id)

    record = harness.task(task.task_id)
    assert record.agent_status == "succeeded"
    assert record.agent_summary == "Recovered"


def test_insight_tasks_finish_without_notification(harness) -> None:
    task = harness.create_task("Review weekly insight", source_type="ai-insight")
    harness.script.add(
        plan_reply("Only step"),
        step_reply("ok", "Single step output"),
        final_reply("Done", FINAL_MARKDOWN),
    )

    harness.start_and_drain(task.task_id)

    titles = [item.title for item in harness.storage.list_notifications(USER_ID)]
    assert "Agent finished a task" not in titles
