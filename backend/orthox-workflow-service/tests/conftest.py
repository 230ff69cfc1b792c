import os
import sys
import tempfile
import time
from pathlib import Path
from types import SimpleNamespace

import pytest


SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ["GEMINI_API_KEY"] = ""
os.environ["ORTHOX_MEDGEMMA_ENDPOINT"] = ""
os.environ["ORTHOX_MEDGEMMA_API_KEY"] = ""
os.environ["ORTHOX_CASE_STORE_BACKEND"] = "sqlite"
os.environ["ORTHOX_CAPABILITY_TIMEOUT_SECONDS"] = "5"
os.environ["ORTHOX_EXPOSE_ERRORS"] = "true"
os.environ["ORTHOX_MAX_MEDIA_BYTES"] = str(1024 * 1024)

_TEST_DATA_DIR = Path(tempfile.gettempdir()) / "orthox-workflow-service-tests"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ["ORTHOX_LOCAL_DATA_DIR"] = str(_TEST_DATA_DIR)
os.environ["ORTHOX_SQLITE_DB_PATH"] = str(_TEST_DATA_DIR / "ortho_x.sqlite3")


FINDINGS_JSON = '{"fracture": "present"}'


class RecordingVision:
    name = "VisionExtractor"

    def __init__(self):
        self.calls = []
        self.result = FINDINGS_JSON
        self.error = None
        self.delay_seconds = 0.0

    def extract(self, media):
        self.calls.append(list(media))
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingReasoner:
    name = "ClinicalReasoner"
    mode = "gemini_fallback"

    def __init__(self):
        self.calls = []
        self.text = "Displaced midshaft tibial fracture; assess for compartment syndrome."
        self.route = "gemini_fallback"
        self.fallback_reason = "endpoint not configured"
        self.error = None

    def reason(self, vision_findings, patient_context):
        from models import ReasoningResult

        self.calls.append((vision_findings, patient_context))
        if self.error is not None:
            raise self.error
        return ReasoningResult(text=self.text, route=self.route, fallback_reason=self.fallback_reason)


class RecordingClassifier:
    name = "Classifier"
    reference_url = "https://classification.aoeducation.org/compendium.pdf"

    def __init__(self):
        self.calls = []
        self.result = "42-A1 Simple spiral fracture of the tibial diaphysis."
        self.error = None

    def classify(self, vision_findings):
        self.calls.append(vision_findings)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingAdvisor:
    name = "GroundedAdvisor"

    def __init__(self):
        self.requests = []
        self.text = "Intramedullary nailing per [AO Surgery Reference](https://surgeryreference.aofoundation.org/)."
        self.source_urls = ["https://surgeryreference.aofoundation.org/"]
        self.error = None
        self.delay_seconds = 0.0

    def advise(self, request):
        from models import GroundedAdvice, GroundingSource

        self.requests.append(request)
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        return GroundedAdvice(
            text=self.text,
            sources=[GroundingSource(title="AO Surgery Reference", url=url) for url in self.source_urls],
        )


class RecordingOutcomeAssessor:
    name = "OutcomeAssessor"

    def __init__(self):
        self.calls = []
        self.result = "Hardware in good position; progressive callus formation."
        self.error = None

    def assess(self, vision_findings, clinical_status):
        self.calls.append((vision_findings, clinical_status))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def fakes():
    return SimpleNamespace(
        vision=RecordingVision(),
        reasoner=RecordingReasoner(),
        classifier=RecordingClassifier(),
        advisor=RecordingAdvisor(),
        outcome=RecordingOutcomeAssessor(),
    )


@pytest.fixture
def orchestrator(fakes):
    from case_repository import InMemoryCaseRepository
    from orchestrator import WorkflowOrchestrator

    return WorkflowOrchestrator(
        repository=InMemoryCaseRepository(),
        vision=fakes.vision,
        reasoner=fakes.reasoner,
        classifier=fakes.classifier,
        advisor=fakes.advisor,
        outcome_assessor=fakes.outcome,
        capability_timeout_seconds=5,
    )


@pytest.fixture
def image_blob():
    from models import MediaBlob

    return MediaBlob(mime_type="image/png", data=b"\x89PNG\r\n\x1a\nfake", filename="xray.png")
