import json

import httpx
import pytest

from app.core.exceptions import FatalPlatformError, RecordValidationError, RetryableError, StructuralError
from app.services.gp51.client import GP51Client, hash_password
from app.services.imports.planner import WorkItem


class FakeGP51Server:
    """Routes webapi actions to canned responses and records what was asked."""

    def __init__(self):
        self.requests = []
        self.responses = {}
        self.tokens = iter(f"token-{i}" for i in range(1, 100))

    def respond(self, action, *responses):
        self.responses.setdefault(action, []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        action = request.url.params["action"]
        body = json.loads(request.content) if request.content else {}
        self.requests.append((action, body, request.url.params.get("token")))

        queued = self.responses.get(action)
        if queued:
            response = queued.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        if action == "login":
            return httpx.Response(200, json={"status": 0, "token": next(self.tokens)})
        return httpx.Response(200, json={"status": 0})

    def actions(self):
        return [action for action, _, _ in self.requests]


def make_client(server, username="admin", password="secret"):
    return GP51Client(
        base_url="https://gp51.test",
        username=username,
        password=password,
        timeout=5,
        transport=httpx.MockTransport(server),
    )


@pytest.mark.asyncio
async def test_login_sends_hashed_password_once():
    server = FakeGP51Server()
    server.respond("queryuserdetail", *[
        httpx.Response(200, json={"status": 0, "user": {"username": name}}) for name in ("alice", "bob")
    ])
    client = make_client(server)

    await client.fetch_record(WorkItem("user", "alice"))
    await client.fetch_record(WorkItem("user", "bob"))

    assert server.actions() == ["login", "queryuserdetail", "queryuserdetail"]
    _, login_body, _ = server.requests[0]
    assert login_body["password"] == hash_password("secret")
    assert login_body["from"] == "WEB"
    assert server.requests[1][2] == "token-1"
    await client.close()


@pytest.mark.asyncio
async def test_fetch_user_record_is_validated():
    server = FakeGP51Server()
    server.respond("queryuserdetail", httpx.Response(200, json={
        "status": 0,
        "user": {"username": " alice ", "showname": "Alice", "email": "Alice@Example.com", "usertype": 3},
    }))
    client = make_client(server)

    record = await client.fetch_record(WorkItem("user", "alice"))

    assert record.username == "alice"
    assert record.email == "alice@example.com"
    assert record.to_fleet_fields()["gp51_user_type"] == 3


@pytest.mark.asyncio
async def test_fetch_device_record_parses_epoch_millis():
    server = FakeGP51Server()
    server.respond("querydevicedetail", httpx.Response(200, json={
        "status": 0,
        "device": {"deviceid": "860001", "devicename": "Truck 7", "creater": "alice", "lastactivetime": 1760000000000},
    }))
    client = make_client(server)

    record = await client.fetch_record(WorkItem("vehicle", "860001"))

    assert record.devicename == "Truck 7"
    assert record.lastactivetime.tzinfo is not None
    assert record.lastactivetime.year == 2025


@pytest.mark.asyncio
async def test_malformed_record_raises_validation_error():
    server = FakeGP51Server()
    server.respond("queryuserdetail", httpx.Response(200, json={
        "status": 0, "user": {"username": "alice", "email": "not-an-email"},
    }))
    client = make_client(server)

    with pytest.raises(RecordValidationError) as exc_info:
        await client.fetch_record(WorkItem("user", "alice"))

    assert exc_info.value.step == "validate"
    assert exc_info.value.error_kind == "validation"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, error_kind", [
    (500, "server_error"),
    (503, "server_error"),
    (429, "rate_limit"),
])
async def test_transient_http_errors_are_retryable(status_code, error_kind):
    server = FakeGP51Server()
    server.respond("queryuserdetail", httpx.Response(status_code, headers={"Retry-After": "7"}))
    client = make_client(server)

    with pytest.raises(RetryableError) as exc_info:
        await client.fetch_record(WorkItem("user", "alice"))

    assert exc_info.value.error_kind == error_kind
    if status_code == 429:
        assert exc_info.value.details["retry_after"] == 7.0


@pytest.mark.asyncio
async def test_timeouts_are_retryable():
    server = FakeGP51Server()
    server.respond("queryuserdetail", httpx.ReadTimeout("read timed out"))
    client = make_client(server)

    with pytest.raises(RetryableError) as exc_info:
        await client.fetch_record(WorkItem("user", "alice"))

    assert exc_info.value.error_kind == "timeout"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403, 404])
async def test_rejected_requests_are_fatal(status_code):
    server = FakeGP51Server()
    server.respond("queryuserdetail", httpx.Response(status_code))
    client = make_client(server)

    with pytest.raises(FatalPlatformError):
        await client.fetch_record(WorkItem("user", "alice"))


@pytest.mark.asyncio
async def test_non_json_body_is_fatal():
    server = FakeGP51Server()
    server.respond("queryuserdetail", httpx.Response(200, text="<html>maintenance</html>"))
    client = make_client(server)

    with pytest.raises(FatalPlatformError) as exc_info:
        await client.fetch_record(WorkItem("user", "alice"))

    assert exc_info.value.error_kind == "schema"


@pytest.mark.asyncio
async def test_expired_token_logs_in_again():
    server = FakeGP51Server()
    server.respond(
        "queryuserdetail",
        httpx.Response(200, json={"status": 1, "cause": "token expired"}),
        httpx.Response(200, json={"status": 0, "user": {"username": "alice"}}),
    )
    client = make_client(server)

    record = await client.fetch_record(WorkItem("user", "alice"))

    assert record.username == "alice"
    assert server.actions() == ["login", "queryuserdetail", "login", "queryuserdetail"]
    assert server.requests[3][2] == "token-2"


@pytest.mark.asyncio
async def test_token_rejected_twice_is_fatal():
    server = FakeGP51Server()
    server.respond(
        "queryuserdetail",
        httpx.Response(200, json={"status": 1, "cause": "token invalid"}),
        httpx.Response(200, json={"status": 1, "cause": "token invalid"}),
    )
    client = make_client(server)

    with pytest.raises(FatalPlatformError):
        await client.fetch_record(WorkItem("user", "alice"))


@pytest.mark.asyncio
async def test_other_platform_causes_fail_the_record():
    server = FakeGP51Server()
    server.respond("querydevicedetail", httpx.Response(200, json={"status": 2, "cause": "device not exist"}))
    client = make_client(server)

    with pytest.raises(RecordValidationError) as exc_info:
        await client.fetch_record(WorkItem("vehicle", "860001"))

    assert exc_info.value.step == "fetch"


@pytest.mark.asyncio
async def test_rejected_login_is_fatal():
    server = FakeGP51Server()
    server.respond("login", httpx.Response(200, json={"status": 1, "cause": "password error"}))
    client = make_client(server)

    with pytest.raises(FatalPlatformError):
        await client.ping()


@pytest.mark.asyncio
async def test_missing_credentials_are_fatal():
    server = FakeGP51Server()
    client = make_client(server, username="", password="")

    with pytest.raises(FatalPlatformError) as exc_info:
        await client.list_users()

    assert exc_info.value.error_kind == "configuration"
    assert server.requests == []


@pytest.mark.asyncio
async def test_missing_base_url_is_structural():
    server = FakeGP51Server()
    client = make_client(server)
    client.base_url = ""

    with pytest.raises(StructuralError):
        await client.list_users()

    assert server.requests == []
    await client.close()


@pytest.mark.asyncio
async def test_list_users_and_devices():
    server = FakeGP51Server()
    server.respond("queryuserlist", httpx.Response(200, json={
        "status": 0, "users": [{"username": "alice"}, {"username": "bob"}, {"username": "alice"}, {}],
    }))
    server.respond(
        "querymonitorlist",
        httpx.Response(200, json={"status": 0, "groups": [
            {"groupname": "Default", "devices": [{"deviceid": "d1", "creater": "alice"}, {"devicename": "broken"}]},
            {"groupname": "Trucks", "devices": [{"deviceid": "d2", "creater": "alice"}]},
        ]}),
        httpx.Response(200, json={"status": 0, "groups": [
            {"groupname": "Default", "devices": [{"deviceid": "d2", "creater": "alice"}, {"deviceid": "d3"}]},
        ]}),
    )
    client = make_client(server)

    assert await client.list_users() == ["alice", "bob"]
    devices = await client.list_devices(["alice", "bob"])

    assert [d.deviceid for d in devices] == ["d1", "d2", "d3"]
    monitor_requests = [body for action, body, _ in server.requests if action == "querymonitorlist"]
    assert monitor_requests == [{"username": "alice"}, {"username": "bob"}]
