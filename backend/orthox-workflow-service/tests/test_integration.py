import pytest
from fastapi.testclient import TestClient

from capabilities import INSUFFICIENT_DATA_SENTINEL
from errors import CapabilityBadResponse, CapabilityUnavailable
from main import create_app


PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-xray"


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator))


def _create_case(client, **payload):
    resp = client.post("/cases", json=payload)
    assert resp.status_code == 200
    return resp.json()["case"]


def _diagnose(client, case_id):
    return client.post(
        f"/cases/{case_id}/diagnosis",
        files=[("files", ("xray.png", PNG_BYTES, "image/png"))],
    )


def test_orthopedic_case_end_to_end_flow(client, fakes):
    case = _create_case(client, patient_reference_id="p-001")
    case_id = case["id"]
    assert case["patient_name"] == "Patient_p-001"

    diag_resp = client.post(
        f"/cases/{case_id}/diagnosis",
        files=[("files", ("xray.png", PNG_BYTES, "image/png"))],
        data={"video_urls": ["https://www.youtube.com/watch?v=abc123"]},
    )
    assert diag_resp.status_code == 200
    diag_body = diag_resp.json()
    assert diag_body["success"] is True
    assert diag_body["run"]["reasoning_route"] == "gemini_fallback"
    findings = diag_body["run"]["vision_findings"]

    media = fakes.vision.calls[0]
    assert media[0].data == PNG_BYTES
    assert media[1].uri == "https://www.youtube.com/watch?v=abc123"

    class_resp = client.post(f"/cases/{case_id}/classification", json={"vision_findings": findings})
    assert class_resp.status_code == 200
    assert class_resp.json()["run"]["insufficient_data"] is False

    treat_resp = client.post(f"/cases/{case_id}/treatment", json={"patient_context": "Manual labourer"})
    assert treat_resp.status_code == 200
    assert treat_resp.json()["run"]["sources"][0]["url"] == "https://surgeryreference.aofoundation.org/"

    implant_resp = client.post(f"/cases/{case_id}/implant", json={"low_resource_mode": True})
    assert implant_resp.status_code == 200
    assert implant_resp.json()["run"]["low_resource_mode"] is True

    outcome_resp = client.post(
        f"/cases/{case_id}/outcome",
        files=[("files", ("postop.png", PNG_BYTES, "image/png"))],
        data={"clinical_status": "Week 12, pain free"},
    )
    assert outcome_resp.status_code == 200
    assert fakes.outcome.calls[-1][1] == "Week 12, pain free"

    final = client.get(f"/cases/{case_id}").json()["case"]
    assert final["diagnosis"] == fakes.reasoner.text
    assert final["treatment_plan"] == fakes.advisor.text
    assert final["implant_choice"] == fakes.advisor.text
    assert final["outcome_notes"] == fakes.outcome.result
    assert [n["content"] for n in final["notes"]] == [fakes.classifier.result]

    workflow = client.get(f"/cases/{case_id}/workflow").json()["workflow"]
    assert [s["state"] for s in workflow["stages"]] == ["populated"] * 4


def test_vision_receives_files_then_urls_in_form_order(client, fakes):
    case_id = _create_case(client, patient_reference_id="p-order")["id"]

    resp = client.post(
        f"/cases/{case_id}/diagnosis",
        files=[
            ("files", ("ap.png", PNG_BYTES, "image/png")),
            ("files", ("lateral.png", PNG_BYTES, "image/png")),
        ],
        data={"video_urls": ["https://example.org/gait.mp4", "https://example.org/rom.mp4"]},
    )

    assert resp.status_code == 200
    media = fakes.vision.calls[0]
    assert [m.filename or m.uri for m in media] == [
        "ap.png",
        "lateral.png",
        "https://example.org/gait.mp4",
        "https://example.org/rom.mp4",
    ]


def test_list_cases_newest_first(client):
    first = _create_case(client)
    second = _create_case(client)

    body = client.get("/cases").json()
    assert body["count"] == 2
    assert [c["id"] for c in body["cases"]] == [second["id"], first["id"]]


def test_unknown_case_returns_404(client):
    assert client.get("/cases/missing").status_code == 404
    assert client.get("/cases/missing/workflow").status_code == 404
    assert client.post("/cases/missing/treatment", json={}).status_code == 404
    assert _diagnose(client, "missing").status_code == 404


def test_diagnosis_without_media_returns_422(client):
    case = _create_case(client)

    resp = client.post(f"/cases/{case['id']}/diagnosis")

    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert detail["error"] == "InsufficientMedia"
    assert detail["stage"] == "diagnosis"
    assert client.get(f"/cases/{case['id']}").json()["case"]["diagnosis"] is None


def test_out_of_order_stage_returns_409(client):
    case = _create_case(client)

    resp = client.post(f"/cases/{case['id']}/implant", json={})

    assert resp.status_code == 409
    detail = resp.json()["detail"]
    assert detail["error"] == "PreconditionFailed"
    assert detail["missing"] == ["diagnosis", "treatment"]


def test_classification_without_findings_returns_409(client):
    case = _create_case(client)
    resp = client.post(f"/cases/{case['id']}/classification", json={})
    assert resp.status_code == 409


def test_insufficient_classification_is_saved_as_note(client, fakes):
    case = _create_case(client)
    fakes.classifier.result = INSUFFICIENT_DATA_SENTINEL

    resp = client.post(
        f"/cases/{case['id']}/classification",
        json={"vision_findings": '{"fracture": "present"}'},
    )

    assert resp.status_code == 200
    assert resp.json()["run"]["insufficient_data"] is True
    notes = client.get(f"/cases/{case['id']}").json()["case"]["notes"]
    assert notes[0]["content"] == INSUFFICIENT_DATA_SENTINEL


@pytest.mark.parametrize(
    "error, status_code",
    [
        (CapabilityUnavailable("model offline"), 503),
        (CapabilityBadResponse("empty answer"), 502),
    ],
)
def test_capability_failures_map_to_gateway_statuses(client, fakes, error, status_code):
    case = _create_case(client)
    fakes.vision.error = error

    resp = _diagnose(client, case["id"])

    assert resp.status_code == status_code
    detail = resp.json()["detail"]
    assert detail["error"] == error.kind
    assert detail["capability"] == "VisionExtractor"
    assert [t["status"] for t in detail["traces"]] == ["failed", "skipped"]


def test_upload_validation(client, monkeypatch):
    case = _create_case(client)
    url = f"/cases/{case['id']}/diagnosis"

    empty = client.post(url, files=[("files", ("empty.png", b"", "image/png"))])
    assert empty.status_code == 400

    wrong_type = client.post(url, files=[("files", ("notes.pdf", b"%PDF-1.7", "application/pdf"))])
    assert wrong_type.status_code == 400

    monkeypatch.setenv("ORTHOX_MAX_MEDIA_BYTES", "4")
    too_big = client.post(url, files=[("files", ("xray.png", PNG_BYTES, "image/png"))])
    assert too_big.status_code == 413

    bad_url = client.post(url, data={"video_urls": ["ftp://example.org/clip.mp4"]})
    assert bad_url.status_code == 400


def test_patch_toggles_flags_and_keeps_phi_confirmation(client, fakes):
    case = _create_case(client)
    case_id = case["id"]

    resp = client.patch(f"/cases/{case_id}", json={"low_resource_mode": True, "phi_confirmed": True})
    assert resp.status_code == 200
    assert resp.json()["case"]["low_resource_mode"] is True

    resp = client.patch(f"/cases/{case_id}", json={"phi_confirmed": False})
    assert resp.json()["case"]["phi_confirmed"] is True

    _diagnose(client, case_id)
    client.post(f"/cases/{case_id}/treatment", json={})
    assert fakes.advisor.requests[-1].low_resource_mode is True


def test_patch_rejects_artifact_fields(client):
    case = _create_case(client)
    resp = client.patch(f"/cases/{case['id']}", json={"diagnosis": "typed by hand"})
    assert resp.status_code == 422


def test_notes_and_media_endpoints(client):
    case = _create_case(client)
    case_id = case["id"]

    note_resp = client.post(
        f"/cases/{case_id}/notes",
        json={"content": "AO reference for plating", "source_url": "https://surgeryreference.aofoundation.org/"},
    )
    assert note_resp.status_code == 200
    media_resp = client.post(
        f"/cases/{case_id}/media",
        json={"type": "youtube", "url": "https://www.youtube.com/watch?v=abc123"},
    )
    assert media_resp.status_code == 200

    stored = client.get(f"/cases/{case_id}").json()["case"]
    assert stored["notes"][0]["source_url"] == "https://surgeryreference.aofoundation.org/"
    assert stored["media"][0]["type"] == "youtube"

    assert client.post(f"/cases/{case_id}/notes", json={"content": ""}).status_code == 422
    assert client.post("/cases/missing/notes", json={"content": "x"}).status_code == 404


def test_default_app_reports_health_and_unconfigured_gemini():
    from main import app

    default_client = TestClient(app)
    health = default_client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["case_store_backend"] == "sqlite"
    assert health["reasoning_route"] == "gemini_fallback"
    assert health["gemini_configured"] is False

    case_id = default_client.post("/cases", json={}).json()["case"]["id"]
    resp = _diagnose(default_client, case_id)
    assert resp.status_code == 503
    assert resp.json()["detail"]["error"] == "CapabilityUnavailable"
    assert default_client.get(f"/cases/{case_id}").json()["case"]["diagnosis"] is None
