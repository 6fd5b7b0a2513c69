import json

import httpx
import pytest

from axis.errors import ExecutionBackendError, GatewayError, GatewayQuotaError, GatewayRateLimitError
from axis.execution import ExecutionRequest, GatewayExecutionBackend, SSEExecutionBackend
from axis.gateway import GatewayClient, parse_json_object

GATEWAY_URL = "https://gateway.test/v1/chat/completions"


def _completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def _gateway(handler) -> GatewayClient:
    return GatewayClient(url=GATEWAY_URL, api_key="test-key", model="test-model", transport=httpx.MockTransport(handler))


def _request() -> ExecutionRequest:
    return ExecutionRequest(
        company_id="company",
        role_id="role",
        task_id="task",
        title="Pricing analysis",
        description="Write a pricing analysis",
        completion_criteria="Recommend tiers",
        attempt_number=1,
        max_attempts=3,
    )


def test_parse_json_object_tolerates_fences_and_chatter() -> None:
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_object('Sure! {"a": 2} hope this helps') == {"a": 2}
    with pytest.raises(ValueError):
        parse_json_object("no json here")
    with pytest.raises(ValueError):
        parse_json_object("[1, 2]")


@pytest.mark.asyncio
async def test_complete_sends_model_and_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _completion("hello")

    gateway = _gateway(handler)
    content = await gateway.complete([{"role": "user", "content": "hi"}], temperature=0.7, max_tokens=10)
    await gateway.aclose()

    assert content == "hello"
    body = json.loads(seen[0].content)
    assert body["model"] == "test-model"
    assert body["temperature"] == 0.7
    assert body["max_tokens"] == 10
    assert seen[0].headers["Authorization"] == "Bearer test-key"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error", "status_code"),
    [(429, GatewayRateLimitError, 429), (402, GatewayQuotaError, 402), (500, GatewayError, 502)],
)
async def test_gateway_status_errors(status: int, error: type[GatewayError], status_code: int) -> None:
    gateway = _gateway(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(error) as exc_info:
        await gateway.complete([{"role": "user", "content": "hi"}])
    await gateway.aclose()
    assert exc_info.value.status_code == status_code


@pytest.mark.asyncio
async def test_complete_json_rejects_malformed_output() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["response_format"] == {"type": "json_object"}
        return _completion("not json")

    gateway = _gateway(handler)
    with pytest.raises(GatewayError):
        await gateway.complete_json([{"role": "user", "content": "hi"}])
    await gateway.aclose()


@pytest.mark.asyncio
async def test_sse_backend_collects_output_and_done() -> None:
    stream = (
        'event: output\ndata: {"content": "## Plan\\n"}\n\n'
        'event: output\ndata: {"content": "- tiers"}\n\n'
        'event: done\ndata: {"evaluation": {"result": "pass", "reason": "Looks complete"}}\n\n'
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/task"
        assert json.loads(request.content)["task"]["id"] == "task"
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream.encode())

    backend = SSEExecutionBackend(base_url="https://exec.test", api_key="k", transport=httpx.MockTransport(handler))
    result = await backend.execute(_request())
    await backend.aclose()

    assert result.output == "## Plan\n- tiers"
    assert result.verdict == "pass"
    assert result.reason == "Looks complete"
    assert result.chunks == ["## Plan\n", "- tiers"]


@pytest.mark.asyncio
async def test_sse_backend_without_done_is_unclear() -> None:
    stream = 'event: output\ndata: "partial work"\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream.encode())

    backend = SSEExecutionBackend(base_url="https://exec.test", transport=httpx.MockTransport(handler))
    result = await backend.execute(_request())
    await backend.aclose()

    assert result.output == "partial work"
    assert result.verdict == "unclear"


@pytest.mark.asyncio
async def test_sse_backend_errors() -> None:
    def error_event(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=b"event: error\ndata: boom\n\n"
        )

    def unavailable(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    for handler in (error_event, unavailable):
        backend = SSEExecutionBackend(base_url="https://exec.test", transport=httpx.MockTransport(handler))
        with pytest.raises(ExecutionBackendError):
            await backend.execute(_request())
        await backend.aclose()


@pytest.mark.asyncio
async def test_gateway_backend_runs_task_then_evaluates() -> None:
    responses = iter(
        [
            _completion("## Plan\n- tiers"),
            _completion('{"result": "fail", "reason": "No prices"}'),
        ]
    )
    gateway = _gateway(lambda request: next(responses))

    result = await GatewayExecutionBackend(gateway).execute(_request())
    await gateway.aclose()

    assert result.output == "## Plan\n- tiers"
    assert result.verdict == "fail"
    assert result.reason == "No prices"


@pytest.mark.asyncio
async def test_gateway_backend_failure_is_a_backend_error() -> None:
    gateway = _gateway(lambda request: httpx.Response(429))
    with pytest.raises(ExecutionBackendError):
        await GatewayExecutionBackend(gateway).execute(_request())
    await gateway.aclose()
