"""Web API tests for push and pull."""

from __future__ import annotations

import pytest
from flask.testing import FlaskClient

from casilisto.core.config import Config
from casilisto.core.database import Database
from casilisto.core.sync import create_sync_server
from tests.helpers import DEVICE_A, DEVICE_B, DEVICE_C, make_item, make_payload, push_body


def pull(client: FlaskClient, code: str, device_id: str = DEVICE_A, since: object = 0) -> dict:
    response = client.get(
        f"/api/sync/pull?code={code}&deviceId={device_id}&deviceName=Phone&since={since}"
    )
    assert response.status_code == 200
    return response.get_json()


@pytest.mark.web
class TestPush:
    """Test POST /api/sync/push."""

    def test_first_push_is_accepted(self, client: FlaskClient, code: str) -> None:
        payload = make_payload(items=[make_item("a", "Milk")], categories={"Dairy": "blue"})

        response = client.post("/api/sync/push", json=push_body(code, DEVICE_A, payload))

        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is True
        assert data["merged"] is False
        assert "mergedData" not in data
        assert data["serverUpdatedAt"] > 0

    def test_second_device_is_merged(self, client: FlaskClient, code: str) -> None:
        client.post(
            "/api/sync/push",
            json=push_body(code, DEVICE_A, make_payload(items=[make_item("a", "Milk")])),
        )

        response = client.post(
            "/api/sync/push",
            json=push_body(code, DEVICE_B, make_payload(items=[make_item("b", "Eggs")])),
        )

        data = response.get_json()
        assert data["merged"] is True
        texts = [i["text"] for i in data["mergedData"]["items"]]
        assert sorted(texts) == ["Eggs", "Milk"]
        assert data["mergedData"]["updatedAt"] == data["serverUpdatedAt"]

    def test_server_timestamps_increase(self, client: FlaskClient, code: str) -> None:
        stamps = [
            client.post(
                "/api/sync/push", json=push_body(code, DEVICE_A, make_payload())
            ).get_json()["serverUpdatedAt"]
            for _ in range(5)
        ]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 5

    def test_client_timestamp_not_trusted(self, client: FlaskClient, code: str) -> None:
        future = 32503680000000

        response = client.post(
            "/api/sync/push",
            json=push_body(code, DEVICE_A, make_payload(), localUpdatedAt=future),
        )

        assert response.get_json()["serverUpdatedAt"] < future

    def test_push_registers_device(self, client: FlaskClient, code: str) -> None:
        client.post("/api/sync/push", json=push_body(code, DEVICE_A, make_payload()))

        devices = client.get(f"/api/devices?code={code}").get_json()["devices"]
        assert [d["id"] for d in devices] == [DEVICE_A]

    def test_unknown_code(self, client: FlaskClient) -> None:
        response = client.post("/api/sync/push", json=push_body("ZZZZZZ", DEVICE_A, make_payload()))

        assert response.status_code == 404
        assert response.get_json()["errorCode"] == "NOT_FOUND"

    @pytest.mark.parametrize(
        "data",
        [
            {"items": "Milk"},
            {"categories": []},
            {"favorites": [{"category": "Dairy"}]},
            {"bacoMode": "yes"},
            {"items": [], "updatedAt": "soon"},
            "not an object",
        ],
    )
    def test_malformed_payload(self, client: FlaskClient, code: str, data: object) -> None:
        response = client.post("/api/sync/push", json=push_body(code, DEVICE_A, data))

        assert response.status_code == 400
        body = response.get_json()
        assert body["success"] is False
        assert body["errorCode"] == "VALIDATION_ERROR"
        assert body["retryable"] is False

    def test_missing_data(self, client: FlaskClient, code: str) -> None:
        response = client.post("/api/sync/push", json={"code": code, "deviceId": DEVICE_A})

        assert response.status_code == 400

    def test_device_limit_leaves_data_untouched(
        self, test_config: Config, test_db: Database
    ) -> None:
        test_config.set("device_limit", 2)
        client = create_sync_server(config=test_config, db=test_db).test_client()
        code = client.post("/api/user/create").get_json()["code"]
        for device_id in (DEVICE_A, DEVICE_B):
            client.post("/api/sync/push", json=push_body(code, device_id, make_payload()))

        response = client.post(
            "/api/sync/push",
            json=push_body(code, DEVICE_C, make_payload(items=[make_item("c", "Bread")])),
        )

        assert response.status_code == 400
        assert response.get_json()["errorCode"] == "DEVICE_LIMIT"
        assert pull(client, code)["data"]["items"] == []


@pytest.mark.web
class TestPull:
    """Test GET /api/sync/pull."""

    def test_pull_after_push(self, client: FlaskClient, code: str) -> None:
        pushed = client.post(
            "/api/sync/push",
            json=push_body(
                code, DEVICE_A, make_payload(items=[make_item("a", "Milk")], baco_mode=True)
            ),
        ).get_json()

        data = pull(client, code, DEVICE_B)

        assert data["hasChanges"] is True
        assert data["serverUpdatedAt"] == pushed["serverUpdatedAt"]
        assert data["data"]["items"] == [make_item("a", "Milk")]
        assert data["data"]["bacoMode"] is True

    def test_no_changes_since_cursor(self, client: FlaskClient, code: str) -> None:
        stamp = client.post(
            "/api/sync/push", json=push_body(code, DEVICE_A, make_payload())
        ).get_json()["serverUpdatedAt"]

        data = pull(client, code, since=stamp)

        assert data["hasChanges"] is False
        assert data["serverUpdatedAt"] == stamp
        assert "data" not in data

    def test_invalid_since_means_everything(self, client: FlaskClient, code: str) -> None:
        client.post(
            "/api/sync/push",
            json=push_body(code, DEVICE_A, make_payload(items=[make_item("a", "Milk")])),
        )

        assert pull(client, code, since="yesterday")["hasChanges"] is True

    def test_missing_params(self, client: FlaskClient, code: str) -> None:
        response = client.get(f"/api/sync/pull?code={code}")

        assert response.status_code == 400
        assert response.get_json()["errorCode"] == "VALIDATION_ERROR"

    def test_unknown_code(self, client: FlaskClient) -> None:
        response = client.get(f"/api/sync/pull?code=ZZZZZZ&deviceId={DEVICE_A}")

        assert response.status_code == 404
