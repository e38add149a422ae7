import json
from automation_engine.clients.agent_response import (
    AgentTaskState,
    decode_step_output,
    extract_task_error,
    extract_task_id,
    extract_task_result,
    interpret_task_status,
)


def test_extract_task_id_aliases():
    assert extract_task_id('{"task_id": "t-1"}') == "t-1"
    assert extract_task_id('{"taskId": "t-2"}') == "t-2"
    assert extract_task_id('{"id": 42}') == "42"


def test_extract_task_id_prefers_first_alias():
    assert extract_task_id('{"id": "c", "taskId": "b", "task_id": "a"}') == "a"
    assert extract_task_id('{"id": "c", "taskId": "b"}') == "b"


def test_extract_task_id_for_plain_results():
    assert extract_task_id("All done") is None
    assert extract_task_id('["task_id"]') is None
    assert extract_task_id('{"output": {"Output": "done"}}') is None


def test_interpret_task_status():
    assert interpret_task_status({"status": "completed"}) == AgentTaskState.COMPLETED
    assert interpret_task_status({"status": "FAILED"}) == AgentTaskState.FAILED
    assert interpret_task_status({"status": "pending"}) == AgentTaskState.RUNNING
    assert interpret_task_status({"status": "running"}) == AgentTaskState.RUNNING


def test_interpret_unknown_status_keeps_polling():
    assert interpret_task_status({"status": "queued"}) == AgentTaskState.RUNNING
    assert interpret_task_status({}) == AgentTaskState.RUNNING


def test_extract_task_result_order():
    raw = '{"status": "completed"}'
    assert extract_task_result({"result": "r", "response": "s"}, raw) == "r"
    assert extract_task_result({"response": {"output": {"Output": "x"}}}, raw) == '{"output": {"Output": "x"}}'
    assert extract_task_result({"status": "completed"}, raw) == raw


def test_extract_task_error():
    assert extract_task_error({"error": "boom"}) == "boom"
    assert extract_task_error({}) == "Unknown error"


def test_decode_structured_error():
    body = json.dumps({"output": {"Error": True, "Output": "bad config"}})

    output = decode_step_output(body)

    assert output.is_error is True
    assert output.content == "bad config"
    assert output.raw == body


def test_decode_lowercase_output():
    output = decode_step_output(json.dumps({"output": {"output": "fine", "error": False}}))

    assert output.is_error is False
    assert output.content == "fine"


def test_decode_error_flag_must_be_true():
    output = decode_step_output(json.dumps({"output": {"Output": "x", "Error": "true"}}))

    assert output.is_error is False


def test_decode_non_string_content():
    output = decode_step_output(json.dumps({"output": {"Output": {"rows": 3}}}))

    assert output.content == '{"rows": 3}'


def test_decode_output_without_content_keys():
    output = decode_step_output(json.dumps({"output": {"summary": "s"}}))

    assert output.content == '{"summary": "s"}'
    assert output.is_error is False


def test_decode_unrecognized_shapes_are_opaque_results():
    assert decode_step_output("plain text").content == "plain text"
    assert decode_step_output('{"message": "hi"}').content == '{"message": "hi"}'
    assert decode_step_output('{"output": "flat"}').content == '{"output": "flat"}'
    assert not decode_step_output("plain text").is_error
