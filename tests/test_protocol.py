"""Unit tests for the websocket envelope codec."""

import json

import pytest

from shared import protocol
from shared.errors import InvalidState, NotFound, ProtocolError, RemoteError, RequestTimeout, error_from_payload
from shared.schemas import Job, JobKind


class TestEncode:
    def test_call_envelope(self):
        frame = json.loads(protocol.encode("getJob", {"jobId": "abc"}, 7))
        assert frame == {"type": "getJob", "requestId": 7, "data": {"jobId": "abc"}}

    def test_broadcast_has_no_request_id(self):
        frame = json.loads(protocol.encode(protocol.QUEUE_UPDATE, {"queueDepth": 0}))
        assert "requestId" not in frame

    def test_models_serialized_camel_case(self):
        job = Job(kind=JobKind.GENERATION, name="A")
        data = json.loads(protocol.encode(protocol.JOB_UPDATE, job))["data"]
        assert data["id"] == job.id
        assert data["status"] == "queued"
        assert "submittedAt" in data
        assert "errorCategory" in data

    def test_response_type(self):
        frame = json.loads(protocol.encode_response("getJob", 3, {"ok": True}))
        assert frame["type"] == "getJob:response"
        assert frame["requestId"] == 3

    def test_error_envelope(self):
        frame = json.loads(protocol.encode_error(NotFound("Job x not found"), 9))
        assert frame == {
            "type": "error",
            "requestId": 9,
            "data": {"message": "Job x not found", "code": "NotFound"},
        }


class TestDecode:
    def test_decodes_call(self):
        envelope = protocol.decode('{"type": "cancelJob", "requestId": 2, "data": {"jobId": "j"}}')
        assert envelope.type == "cancelJob"
        assert envelope.request_id == 2
        assert envelope.data == {"jobId": "j"}
        assert not protocol.is_broadcast(envelope)

    def test_decodes_bytes(self):
        envelope = protocol.decode(b'{"type": "jobUpdate", "data": {}}')
        assert protocol.is_broadcast(envelope)

    def test_known_broadcast_type_with_request_id_is_broadcast(self):
        envelope = protocol.decode('{"type": "queueUpdate", "requestId": 1, "data": {}}')
        assert protocol.is_broadcast(envelope)

    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            "[1, 2, 3]",
            '{"data": {}}',
            '{"type": ""}',
            '{"type": "x", "requestId": "abc"}',
            b"\xff\xfe",
        ],
    )
    def test_rejects_malformed_frames(self, frame):
        with pytest.raises(ProtocolError):
            protocol.decode(frame)


class TestErrorPayloads:
    def test_known_code_maps_to_class(self):
        err = error_from_payload({"message": "busy", "code": "InvalidState"})
        assert isinstance(err, InvalidState)
        assert err.message == "busy"

    def test_timeout_code(self):
        assert isinstance(error_from_payload({"message": "slow", "code": "Timeout"}), RequestTimeout)

    def test_unknown_code_falls_back(self):
        err = error_from_payload({"message": "boom"})
        assert isinstance(err, RemoteError)
        assert err.message == "boom"

    def test_non_dict_payload(self):
        assert error_from_payload(None).message == "Unknown error"
