"""
OrthoX Workflow Service - Capability Adapters

External model capabilities consumed by the pipeline orchestrator:
- VisionExtractor   (media -> descriptive findings JSON)
- Classifier        (findings -> AO/OTA code, or the insufficient-data sentinel)
- GroundedAdvisor   (diagnosis [+ plan] -> cited advice + sources)
- OutcomeAssessor   (post-op findings + status -> assessment)

ClinicalReasoner lives in clinical_reasoner.py.

Every adapter call either returns its output or raises a CapabilityError
subclass. Gemini-backed variants share one GeminiGateway per orchestrator.
"""

from __future__ import annotations

import json
import logging
import re
from threading import Lock
from typing import Any, List, Optional, Sequence

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from env_loader import env_str
from errors import CapabilityBadResponse, CapabilityUnavailable, InsufficientMedia
from models import AdviceKind, AdviceRequest, GroundedAdvice, GroundingSource, MediaBlob

logger = logging.getLogger(__name__)

DEFAULT_VISION_MODEL = "gemini-2.5-pro"
DEFAULT_GROUNDED_MODEL = "gemini-2.5-flash"

AO_COMPENDIUM_URL = (
    "https://classification.aoeducation.org/files/download/AOOTA_Classification_2018_Compendium.pdf"
)
INSUFFICIENT_DATA_SENTINEL = (
    "(Precise sub-group cannot be determined from provided views per Compendium guidelines)."
)
AO_DOMAIN_RESTRICTION = (
    "site:surgeryreference.aofoundation.org OR site:aofoundation.org/approved/ "
    "OR site:journals.lww.com/jorthotrauma/Fulltext/2018/01001/"
)
NO_GUIDELINE_STATEMENT = "No direct AO Foundation guideline found for this specific query"

_SENTINEL_MARKER = "precise sub-group cannot be determined"
# Bone+segment prefix then morphology type: 32-A1, 31A2.1, 2R3-A, 44-B.
# Figure or section labels such as "Figure 2B" do not qualify.
_AO_CODE_PATTERN = re.compile(
    r"\b(?:[1-9][1-9]|[1-9][RU][1-9])(?:-[A-C][1-3]?|[A-C][1-3])(?:\.[1-3])?\b"
)


def strip_markdown_fences(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned.startswith("```"):
        return cleaned
    cleaned = re.sub(r"^\s*```[a-zA-Z0-9_-]*\s*", "", cleaned)
    cleaned = re.sub(r"\s*```\s*$", "", cleaned)
    return cleaned.strip()


def is_insufficient_data(text: str) -> bool:
    return _SENTINEL_MARKER in (text or "").lower()


def extract_grounding_sources(response: Any) -> List[GroundingSource]:
    """
    Ordered, URL-deduplicated web sources from a grounded Gemini response.
    """
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    metadata = getattr(candidates[0], "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []
    seen = set()
    sources: List[GroundingSource] = []
    for chunk in chunks:
        web = getattr(chunk, "web", None)
        uri = (getattr(web, "uri", None) or "").strip()
        if not uri or uri in seen:
            continue
        seen.add(uri)
        sources.append(GroundingSource(title=getattr(web, "title", None), url=uri))
    return sources


class GeminiGateway:
    """
    Thin wrapper over the google-genai client that maps SDK failures onto the
    capability error taxonomy. The SDK client is built on first use.
    """

    def __init__(self, api_key: Optional[str] = None) -> None:
        self.api_key = env_str("GEMINI_API_KEY") if api_key is None else api_key.strip()
        self._client: Optional[genai.Client] = None
        self._client_lock = Lock()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self, capability: str) -> genai.Client:
        if not self.configured:
            raise CapabilityUnavailable(
                "GEMINI_API_KEY is not configured.",
                capability=capability,
            )
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                self._client = genai.Client(api_key=self.api_key)
        return self._client

    def generate(
        self,
        *,
        capability: str,
        model: str,
        contents: Any,
        config: Optional[types.GenerateContentConfig] = None,
    ) -> Any:
        client = self._get_client(capability)
        try:
            return client.models.generate_content(model=model, contents=contents, config=config)
        except genai_errors.APIError as exc:
            raise CapabilityUnavailable(
                f"Gemini {model} call failed: {exc}",
                capability=capability,
            ) from exc
        except (httpx.HTTPError, OSError) as exc:
            raise CapabilityUnavailable(
                f"Gemini {model} unreachable: {exc}",
                capability=capability,
            ) from exc

    @staticmethod
    def response_text(response: Any, capability: str) -> str:
        text = getattr(response, "text", None)
        if not isinstance(text, str) or not text.strip():
            raise CapabilityBadResponse(
                "Model returned an empty response.",
                capability=capability,
            )
        return text.strip()


# =============================================================================
# VISION
# =============================================================================


class VisionExtractor:
    name = "VisionExtractor"

    def extract(self, media: Sequence[MediaBlob]) -> str:
        raise NotImplementedError


class GeminiVisionExtractor(VisionExtractor):
    def __init__(self, gateway: GeminiGateway, model_name: Optional[str] = None) -> None:
        self.gateway = gateway
        self.model_name = model_name or env_str("ORTHOX_VISION_MODEL", DEFAULT_VISION_MODEL)

    def instruction(self) -> str:
        return (
            "You are a radiologic extractor. Convert the visual data from these images/videos "
            "into a structured JSON format. Identify: fracture lines, displacement, articular "
            "step-off, hardware positioning, and anatomical landmarks. "
            "DO NOT make definitive clinical diagnoses. Output ONLY valid JSON."
        )

    @staticmethod
    def _to_part(blob: MediaBlob) -> types.Part:
        if blob.is_reference:
            return types.Part.from_uri(file_uri=str(blob.uri), mime_type=blob.mime_type)
        return types.Part.from_bytes(data=blob.data or b"", mime_type=blob.mime_type)

    def extract(self, media: Sequence[MediaBlob]) -> str:
        if not media:
            raise InsufficientMedia("Vision extraction requires at least one media item.")
        parts = [self._to_part(blob) for blob in media]
        parts.append(types.Part.from_text(text=self.instruction()))
        response = self.gateway.generate(
            capability=self.name,
            model=self.model_name,
            contents=parts,
            config=types.GenerateContentConfig(
                temperature=0.1,
                response_mime_type="application/json",
            ),
        )
        raw = strip_markdown_fences(self.gateway.response_text(response, self.name))
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise CapabilityBadResponse(
                f"Vision findings are not valid JSON: {exc}",
                capability=self.name,
            ) from exc
        if not isinstance(parsed, (dict, list)) or not parsed:
            raise CapabilityBadResponse(
                "Vision findings JSON is empty.",
                capability=self.name,
            )
        return raw


# =============================================================================
# CLASSIFICATION
# =============================================================================


class Classifier:
    name = "Classifier"
    reference_url: Optional[str] = None

    def classify(self, vision_findings: str) -> str:
        raise NotImplementedError


class GeminiCompendiumClassifier(Classifier):
    """
    AO/OTA classification grounded on the 2018 Compendium document only.
    """

    def __init__(self, gateway: GeminiGateway, model_name: Optional[str] = None) -> None:
        self.gateway = gateway
        self.model_name = model_name or env_str("ORTHOX_GROUNDED_MODEL", DEFAULT_GROUNDED_MODEL)
        self.reference_url = AO_COMPENDIUM_URL

    def build_prompt(self, vision_findings: str) -> str:
        return (
            f"Based on this vision data: {vision_findings}, classify the fracture using the "
            "AO/OTA 2018 Compendium.\n"
            "You MUST use ONLY the definitions and morphological descriptions from the "
            f"compendium at {self.reference_url}.\n"
            "Output format:\n"
            "- Alphanumeric Code (e.g., 32-A1)\n"
            "- Exact clinical description from the PDF\n"
            "- Compendium Reference (citing the section)\n"
            f'If data is insufficient, state: "{INSUFFICIENT_DATA_SENTINEL}"'
        )

    def classify(self, vision_findings: str) -> str:
        response = self.gateway.generate(
            capability=self.name,
            model=self.model_name,
            contents=self.build_prompt(vision_findings),
            config=types.GenerateContentConfig(
                tools=[types.Tool(url_context=types.UrlContext())],
            ),
        )
        text = self.gateway.response_text(response, self.name)
        # A group-level code qualified by the sentinel is kept as answered.
        if _AO_CODE_PATTERN.search(text):
            return text
        if not is_insufficient_data(text):
            logger.warning(
                "Classifier answer carried no AO/OTA code; reporting insufficient data instead."
            )
        return INSUFFICIENT_DATA_SENTINEL


# =============================================================================
# GROUNDED ADVICE
# =============================================================================


class GroundedAdvisor:
    name = "GroundedAdvisor"

    def advise(self, request: AdviceRequest) -> GroundedAdvice:
        raise NotImplementedError


class GeminiGroundedAdvisor(GroundedAdvisor):
    """
    Search-grounded treatment / implant advice restricted to AO Foundation sources.
    """

    def __init__(self, gateway: GeminiGateway, model_name: Optional[str] = None) -> None:
        self.gateway = gateway
        self.model_name = model_name or env_str("ORTHOX_GROUNDED_MODEL", DEFAULT_GROUNDED_MODEL)

    def build_prompt(self, request: AdviceRequest) -> str:
        if request.kind == AdviceKind.TREATMENT:
            prompt = (
                f'Based on the diagnosis: "{request.diagnosis}" and patient context: '
                f'"{request.patient_context}", provide evidence-based treatment advice strictly '
                "grounded in AO Foundation guidelines.\n"
                "Every clinical claim or operative step MUST be followed by an inline markdown "
                "hyperlink to its direct source.\n"
                f'If no direct AO Foundation guideline is found, explicitly state: "{NO_GUIDELINE_STATEMENT}" '
                "before providing general advice."
            )
            if request.low_resource_mode:
                prompt += (
                    "\n\nLOW-RESOURCE SETTING ENABLED: Prioritize and recommend generic, widely "
                    "available fixation methods (e.g., external fixators, standard tubular plates, "
                    "K-wires, casts) over proprietary manufacturer systems."
                )
            search = f'"{request.diagnosis} treatment guidelines {AO_DOMAIN_RESTRICTION}"'
        else:
            prompt = (
                f"For a patient with: {request.diagnosis} undergoing: {request.treatment_plan}, "
                "suggest appropriate orthopedic implants.\n"
                "Strictly ground suggestions in AO Foundation approved hardware.\n"
                "Every suggestion MUST be followed by an inline markdown hyperlink to its direct source.\n"
                f'If no direct AO Foundation source is found, explicitly state: "{NO_GUIDELINE_STATEMENT}".'
            )
            if request.low_resource_mode:
                prompt += (
                    "\n\nLOW-RESOURCE SETTING ENABLED: Recommend generic fixation methods "
                    "(e.g., standard plates, screws, K-wires) maximizing global clinical impact "
                    "over proprietary manufacturer systems."
                )
            search = f'"{request.diagnosis} implant selection {AO_DOMAIN_RESTRICTION}"'
        return f"{prompt} Search query: {search}"

    def advise(self, request: AdviceRequest) -> GroundedAdvice:
        response = self.gateway.generate(
            capability=self.name,
            model=self.model_name,
            contents=self.build_prompt(request),
            config=types.GenerateContentConfig(
                tools=[types.Tool(google_search=types.GoogleSearch())],
            ),
        )
        text = self.gateway.response_text(response, self.name)
        sources = extract_grounding_sources(response)
        if not sources and NO_GUIDELINE_STATEMENT.lower() not in text.lower():
            logger.warning(
                "%s returned %s advice without grounding sources; marking it ungrounded.",
                self.name,
                request.kind.value,
            )
            text = f"{NO_GUIDELINE_STATEMENT}.\n\n{text}"
        return GroundedAdvice(text=text, sources=sources)


# =============================================================================
# OUTCOME
# =============================================================================


class OutcomeAssessor:
    name = "OutcomeAssessor"

    def assess(self, vision_findings: str, clinical_status: str) -> str:
        raise NotImplementedError


class GeminiOutcomeAssessor(OutcomeAssessor):
    def __init__(self, gateway: GeminiGateway, model_name: Optional[str] = None) -> None:
        self.gateway = gateway
        self.model_name = model_name or env_str("ORTHOX_VISION_MODEL", DEFAULT_VISION_MODEL)

    def build_prompt(self, vision_findings: str, clinical_status: str) -> str:
        return (
            f"Vision Data (Post-Op): {vision_findings}. Clinical Status: {clinical_status}.\n"
            "Evaluate post-operative recovery. Extract hardware positioning, alignment, and "
            "range-of-motion metrics. Monitor for complications (hardware failure, infection "
            "signs). Calculate functional recovery scores."
        )

    def assess(self, vision_findings: str, clinical_status: str) -> str:
        response = self.gateway.generate(
            capability=self.name,
            model=self.model_name,
            contents=self.build_prompt(vision_findings, clinical_status),
        )
        return self.gateway.response_text(response, self.name)
