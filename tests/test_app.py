"""
End-to-end tests for the genqueue server apps.

Uses the real scheduler, stores and hub with the backend served by
httpx.MockTransport, driven through Starlette's TestClient websocket.
"""

import base64
import json

import httpx
import pytest
from starlette.testclient import TestClient

from backends.auto1111 import Auto1111Backend
from server.app import GenQueueServer, build_config, create_files_app, create_transport_app, parse_args
from server.settings import ServerConfig
from shared import protocol

PNG_BYTES = b"\x89PNG fake image"


def backend_handler(request):
    path = request.url.path
    if path == "/sdapi/v1/txt2img":
        return httpx.Response(200, json={"images": [base64.b64encode(PNG_BYTES).decode()]})
    if path in ("/sdapi/v1/memory", "/sdapi/v1/progress"):
        return httpx.Response(200, json={"ok": True})
    if path == "/sdapi/v1/options":
        return httpx.Response(200, json=None)
    if path == "/sdapi/v1/sd-models":
        return httpx.Response(200, json=[{"title": "sdxl_base"}])
    return httpx.Response(404, json={"detail": "Not Found"})


def make_server(tmp_path, tick_interval_s=60.0):
    config = ServerConfig(data_dir=tmp_path, tick_interval_s=tick_interval_s, server_id="test-server")
    backend = Auto1111Backend.from_url("http://sd.test", transport=httpx.MockTransport(backend_handler))
    return GenQueueServer(config, backend=backend)


class Caller:
    """Minimal synchronous request/response helper over a TestClient websocket."""

    def __init__(self, ws):
        self.ws = ws
        self.next_id = 1
        self.broadcasts = []

    def call(self, type_, data=None):
        request_id = self.next_id
        self.next_id += 1
        self.ws.send_text(protocol.encode(type_, data, request_id))
        while True:
            msg = self.ws.receive_json()
            if msg.get("requestId") == request_id and msg["type"] != protocol.QUEUE_UPDATE:
                return msg
            self.broadcasts.append(msg)

    def wait_for(self, predicate, limit=200):
        for msg in self.broadcasts:
            if predicate(msg):
                return msg
        for _ in range(limit):
            msg = self.ws.receive_json()
            self.broadcasts.append(msg)
            if predicate(msg):
                return msg
        raise AssertionError("expected broadcast never arrived")


class TestTransportApp:
    def test_health(self, tmp_path):
        with TestClient(create_transport_app(make_server(tmp_path))) as client:
            body = client.get("/health").json()
        assert body["ok"] is True
        assert body["serverId"] == "test-server"
        assert body["schedulerRunning"] is True

    def test_generation_end_to_end(self, tmp_path):
        server = make_server(tmp_path, tick_interval_s=0.01)
        with TestClient(create_transport_app(server)) as client, client.websocket_connect("/ws") as ws:
            caller = Caller(ws)
            reply = caller.call("startGeneration", {"name": "A", "prompt": "a cat", "steps": 5})
            assert reply["type"] == "startGeneration:response"
            job_id = reply["data"]["id"]
            assert reply["data"]["status"] == "queued"

            done = caller.wait_for(
                lambda m: m["type"] == protocol.JOB_UPDATE
                and m["data"]["id"] == job_id
                and m["data"]["status"] == "completed"
            )
            assert done["data"]["result"] == ["A/00000.png"]

            job = caller.call("getJob", {"jobId": job_id})
            assert job["data"]["status"] == "completed"

        assert (tmp_path / "output" / "A" / "00000.png").read_bytes() == PNG_BYTES

    def test_cancel_queued_and_unknown(self, tmp_path):
        with TestClient(create_transport_app(make_server(tmp_path))) as client, client.websocket_connect("/ws") as ws:
            caller = Caller(ws)
            job_id = caller.call("startGeneration", {"name": "A"})["data"]["id"]

            assert caller.call("cancelJob", {"jobId": job_id})["data"] == {"jobId": job_id}
            assert caller.call("getQueueStatus")["data"]["queueDepth"] == 0

            missing = caller.call("cancelJob", {"jobId": job_id})
            assert missing["type"] == "error"
            assert missing["data"]["code"] == "NotFound"

    def test_invalid_payloads(self, tmp_path):
        with TestClient(create_transport_app(make_server(tmp_path))) as client, client.websocket_connect("/ws") as ws:
            caller = Caller(ws)
            assert caller.call("startGeneration", {"steps": 3})["data"]["code"] == "InvalidRequest"
            assert caller.call("startGeneration", "nope")["data"]["code"] == "InvalidRequest"
            assert caller.call("cancelJob", {})["data"]["code"] == "InvalidRequest"
            assert caller.call("doesNotExist")["data"]["message"] == "Unknown message type: doesNotExist"

    def test_upscale_requires_existing_image(self, tmp_path):
        with TestClient(create_transport_app(make_server(tmp_path))) as client, client.websocket_connect("/ws") as ws:
            caller = Caller(ws)
            assert caller.call("queueUpscale", {"imagePath": "A/00000.png"})["data"]["code"] == "NotFound"
            assert caller.call("queueUpscale", {"imagePath": "../x.png"})["data"]["code"] == "InvalidRequest"

            (tmp_path / "output" / "A").mkdir(parents=True)
            (tmp_path / "output" / "A" / "00000.png").write_bytes(PNG_BYTES)
            reply = caller.call("queueUpscale", {"imagePath": "A/00000.png", "config": {"upscale_scale_factor": 2}})
            assert reply["data"]["kind"] == "upscale"
            assert caller.call("getQueueStatus")["data"]["upscaleQueueLength"] == 1

    def test_server_status_broadcast(self, tmp_path):
        with TestClient(create_transport_app(make_server(tmp_path))) as client, client.websocket_connect("/ws") as ws:
            caller = Caller(ws)
            reply = caller.call("getServerStatus")
            assert reply["data"]["backend"]["status"] == "ok"
            assert reply["data"]["queue"]["processing"] is False
            status = caller.wait_for(lambda m: m["type"] == protocol.SERVER_STATUS)
            assert status["data"] == reply["data"]

    def test_saved_configs_and_continuous_control(self, tmp_path):
        with TestClient(create_transport_app(make_server(tmp_path))) as client, client.websocket_connect("/ws") as ws:
            caller = Caller(ws)
            defaults = caller.call("getDefaultConfig")["data"]
            assert defaults["steps"] == 25

            created = caller.call(
                "createConfig", {"name": "portrait", "parameters": {"steps": 12}, "model": "sdxl_base"}
            )
            assert created["data"]["name"] == "portrait"
            assert caller.call("createConfig", {"name": "portrait"})["data"]["code"] == "InvalidState"
            caller.call("updateConfig", {"name": "portrait", "parameters": {"steps": 14}})
            assert caller.call("getConfigs")["data"][0]["parameters"] == {"steps": 14}

            started = caller.call("startConfig", {"name": "portrait"})["data"]
            assert started["parameters"] == {"steps": 14, "model": "sdxl_base"}
            assert started["status"] == "active"

            stopped = caller.call("stopConfig", {"configId": started["id"]})["data"]
            assert stopped["status"] == "stopped"
            resumed = caller.call("resumeConfig", {"configId": started["id"]})["data"]
            assert resumed["status"] == "active"
            assert caller.call("removeConfig", {"configId": started["id"]})["data"] == {"configId": started["id"]}
            assert caller.call("getQueueStatus")["data"]["configs"] == []

            assert caller.call("deleteConfig", {"name": "portrait"})["data"] == {"name": "portrait"}
            assert caller.call("startConfig", {"name": "portrait"})["data"]["code"] == "NotFound"

        saved = json.loads((tmp_path / "generation-configs.json").read_text())
        assert saved == []

    def test_backend_proxies(self, tmp_path):
        with TestClient(create_transport_app(make_server(tmp_path))) as client, client.websocket_connect("/ws") as ws:
            caller = Caller(ws)
            assert caller.call("getModels")["data"] == [{"title": "sdxl_base"}]
            assert caller.call("setModel", {"modelName": "sdxl_base"})["data"] == {"modelName": "sdxl_base"}
            assert caller.call("checkHealth")["data"]["status"] == "ok"
            assert caller.call("getSamplers")["data"]["code"] == "BackendError"


class TestFilesApp:
    def test_serves_artifacts(self, tmp_path):
        server = make_server(tmp_path)
        app = create_files_app(server)
        (tmp_path / "output" / "A").mkdir(parents=True)
        (tmp_path / "output" / "A" / "00000.png").write_bytes(PNG_BYTES)

        client = TestClient(app)
        response = client.get("/output/A/00000.png")
        assert response.status_code == 200
        assert response.content == PNG_BYTES
        assert client.get("/output/A/00001.png").status_code == 404
        assert client.get("/health").json()["ok"] is True


class TestCommandLine:
    def test_flags_override_config(self, tmp_path, monkeypatch):
        config_file = tmp_path / "server.yaml"
        config_file.write_text("ws_port: 9000\nfiles_port: 9001\nhost: 127.0.0.1\n")
        for key in ("AUTO1111_API_URL", "HOST", "PORT", "FILES_PORT", "DATA_DIR"):
            monkeypatch.delenv(key, raising=False)

        config = build_config(parse_args(["--config", str(config_file), "--port", "9100"]))

        assert config.ws_port == 9100
        assert config.files_port == 9001
        assert config.host == "127.0.0.1"

    def test_missing_explicit_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            build_config(parse_args(["--config", str(tmp_path / "nope.yaml")]))
