import base64
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from evogate import __version__
from evogate.api.server import create_app, status_for
from evogate.config.schema import Config
from evogate.core import (
    ExpiredError,
    InstanceRegistry,
    InvalidArgumentError,
    NotFoundError,
    TransportError,
)
from evogate.telemetry import PrometheusTelemetry
from evogate.transport import SimulatedTransport, build_transport

from conftest import FakeClock


@pytest.fixture
def gateway(clock: FakeClock) -> tuple[InstanceRegistry, SimulatedTransport]:
    config = Config()
    registry = InstanceRegistry(qr_ttl_seconds=60, clock=clock)
    transport = build_transport(config, registry)
    assert isinstance(transport, SimulatedTransport)
    return registry, transport


@pytest.fixture
def client(gateway) -> Iterator[TestClient]:
    registry, transport = gateway
    app = create_app(Config(), registry=registry, transport=transport)
    with TestClient(app) as test_client:
        yield test_client


def _create(client: TestClient, name: str = "demo") -> None:
    assert client.post("/instance/create", json={"instanceName": name}).status_code == 201


def _connect(client: TestClient, name: str = "demo") -> None:
    _create(client, name)
    assert client.get(f"/instance/qrcode/{name}", params={"image": "false"}).status_code == 200
    assert client.post(f"/instance/simulate/{name}/scan").status_code == 200
    assert client.post(f"/instance/simulate/{name}/open").status_code == 200


def test_banner_and_health(client: TestClient) -> None:
    body = client.get("/").json()
    assert body == {"message": "Evolution API", "status": "online", "version": __version__}
    assert client.get("/health").json() == {"status": "ok"}


def test_create_instance(client: TestClient) -> None:
    response = client.post("/instance/create", json={"instanceName": "demo"})
    assert response.status_code == 201
    instance = response.json()["instance"]
    assert instance["instanceName"] == "demo"
    assert instance["status"] == "created"
    assert instance["state"] == "close"


def test_create_duplicate_conflicts(client: TestClient) -> None:
    _create(client)
    response = client.post("/instance/create", json={"instanceName": "demo"})
    assert response.status_code == 409
    assert response.json() == {
        "error": {"code": "already_exists", "message": "Instance already exists: demo", "instance": "demo"}
    }


@pytest.mark.parametrize("payload", [{}, {"instanceName": ""}, {"instanceName": "   "}, None])
def test_create_requires_name(client: TestClient, payload: dict | None) -> None:
    response = client.post("/instance/create", json=payload)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_argument"


def test_fetch_instances(client: TestClient) -> None:
    assert client.get("/manager/fetchInstances").json() == []
    _create(client, "a")
    _create(client, "b")

    names = {item["instanceName"] for item in client.get("/manager/fetchInstances").json()}
    assert names == {"a", "b"}


def test_qrcode_returns_image_and_token(client: TestClient) -> None:
    _create(client)
    response = client.get("/instance/qrcode/demo")
    assert response.status_code == 200
    body = response.json()
    assert body["instance"] == "demo"
    assert body["code"].startswith("2@")
    assert body["expiresAt"]
    assert body["qrcode"].startswith("data:image/png;base64,")
    assert base64.b64decode(body["qrcode"].split(",", 1)[1]).startswith(b"\x89PNG")

    again = client.get("/instance/qrcode/demo", params={"image": "false"}).json()
    assert again["code"] == body["code"]
    assert again["qrcode"] is None


def test_qrcode_after_expiry_is_new(client: TestClient, clock: FakeClock) -> None:
    _create(client)
    first = client.get("/instance/qrcode/demo", params={"image": "false"}).json()["code"]
    clock.advance(61)

    state = client.get("/instance/connectionState/demo").json()["instance"]
    assert state["status"] == "created"
    second = client.get("/instance/qrcode/demo", params={"image": "false"}).json()["code"]
    assert second != first


def test_qrcode_unknown_instance(client: TestClient) -> None:
    response = client.get("/instance/qrcode/ghost")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_qrcode_when_connected_conflicts(client: TestClient) -> None:
    _connect(client)
    response = client.get("/instance/qrcode/demo")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "already_connected"


def test_connection_state_follows_lifecycle(client: TestClient) -> None:
    _create(client)

    def state() -> dict:
        return client.get("/instance/connectionState/demo").json()["instance"]

    assert state()["state"] == "close"
    client.get("/instance/qrcode/demo", params={"image": "false"})
    assert (state()["status"], state()["state"]) == ("qr_ready", "connecting")
    client.post("/instance/simulate/demo/scan")
    assert state()["status"] == "connecting"
    client.post("/instance/simulate/demo/open")
    current = state()
    assert (current["status"], current["state"]) == ("connected", "open")
    assert current["connectedAt"]


def test_send_text(client: TestClient, gateway) -> None:
    _, transport = gateway
    _connect(client)

    response = client.post("/message/sendText/demo", json={"number": "5511999999999", "text": "hi"})
    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["key"]["remoteJid"] == "5511999999999@s.whatsapp.net"
    assert body["key"]["id"].startswith("3EB0")
    assert isinstance(body["messageTimestamp"], int)
    assert [m.message_id for m in transport.outbox] == [body["key"]["id"]]


def test_send_text_requires_connection(client: TestClient) -> None:
    _create(client)
    response = client.post("/message/sendText/demo", json={"number": "5511999999999", "text": "hi"})
    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "not_connected"
    assert error["state"] == "created"


def test_send_text_unknown_instance(client: TestClient) -> None:
    response = client.post("/message/sendText/demo2", json={"number": "5511999999999", "text": "hi"})
    assert response.status_code == 404


def test_send_text_validates_body(client: TestClient) -> None:
    _connect(client)
    response = client.post("/message/sendText/demo", json={"number": "5511999999999"})
    assert response.status_code == 400
    assert response.json()["error"]["field"] == "text"


def test_logout_removes_instance(client: TestClient) -> None:
    _connect(client)
    assert client.delete("/instance/logout/demo").status_code == 200
    assert client.get("/instance/connectionState/demo").status_code == 404


def test_logout_requires_connection(client: TestClient) -> None:
    _create(client)
    response = client.delete("/instance/logout/demo")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "not_connected"


def test_delete_instance(client: TestClient) -> None:
    _connect(client)
    assert client.delete("/instance/delete/demo").status_code == 200
    assert client.get("/instance/connectionState/demo").status_code == 404
    assert client.delete("/instance/delete/demo").status_code == 404


def test_simulated_drop_and_logout(client: TestClient) -> None:
    _connect(client)
    body = client.post("/instance/simulate/demo/close", params={"reason": "blip"}).json()
    assert body["instance"]["status"] == "connecting"
    assert body["instance"]["reason"] == "blip"

    client.post("/instance/simulate/demo/open")
    body = client.post("/instance/simulate/demo/close", params={"loggedOut": "true"}).json()
    assert body["instance"]["status"] == "disconnected"
    assert client.get("/instance/connectionState/demo").status_code == 404


def test_simulated_fail(client: TestClient) -> None:
    _create(client)
    client.get("/instance/qrcode/demo", params={"image": "false"})
    body = client.post("/instance/simulate/demo/fail", params={"reason": "phone offline"}).json()
    assert body["instance"]["status"] == "disconnected"


def test_simulate_rejects_unknown_event_and_instance(client: TestClient) -> None:
    _create(client)
    response = client.post("/instance/simulate/demo/teleport")
    assert response.status_code == 400
    assert client.post("/instance/simulate/ghost/scan").status_code == 404


def test_simulated_scan_in_wrong_state(client: TestClient) -> None:
    _create(client)
    response = client.post("/instance/simulate/demo/scan")
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "invalid_state"


def test_simulate_unavailable_for_bridge_transport() -> None:
    config = Config()
    config.transport.mode = "bridge"
    registry = InstanceRegistry(token_factory=None)
    transport = build_transport(config, registry)
    app = create_app(config, registry=registry, transport=transport)

    # No lifespan: the bridge socket is never opened.
    client = TestClient(app)
    registry.create("demo")
    response = client.post("/instance/simulate/demo/scan")
    assert response.status_code == 409

    response = client.get("/instance/qrcode/demo", params={"image": "false"})
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "transport_error"


def test_webhook_acknowledges(client: TestClient) -> None:
    response = client.post("/webhook/demo", json={"event": "messages.upsert"})
    assert response.json() == {"received": True}


def test_metrics_with_prometheus_backend() -> None:
    config = Config()
    config.telemetry.backend = "prometheus"
    app = create_app(config)
    with TestClient(app) as client:
        _create(client)
        response = client.get("/metrics")

    assert response.status_code == 200
    assert "evogate_instances_created_total 1.0" in response.text
    assert isinstance(app.state.gateway.telemetry, PrometheusTelemetry)


def test_metrics_with_memory_backend(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "not enabled" in response.text


def test_cors_headers(client: TestClient) -> None:
    response = client.get("/health", headers={"Origin": "http://example.com"})
    assert response.headers["access-control-allow-origin"] == "*"


def test_status_mapping() -> None:
    assert status_for(InvalidArgumentError("x")) == 400
    assert status_for(NotFoundError("x")) == 404
    assert status_for(ExpiredError("x")) == 410
    assert status_for(TransportError("x")) == 502
